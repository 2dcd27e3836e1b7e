from __future__ import annotations

import logging
from typing import Iterable, Mapping

from dependency_algorithm import CircularDependencyException, Dependencies

from ulazy.exceptions import (
    CyclicDependency,
    ManifestError,
    ResolutionError,
    UnknownDependency,
)
from ulazy.lockfile import Lockfile
from ulazy.models import (
    ExtensionSpec,
    InstalledExtension,
    PlanAction,
    PlanItem,
    SourceKind,
)

logger: logging.Logger = logging.getLogger(__name__)


class Resolver(object):
    """Order a manifest for installation and work out what has to change on disk."""

    def __init__(
        self, specs: Iterable[ExtensionSpec], disabled: Iterable[str] = ()
    ) -> None:
        self.specs: dict[str, ExtensionSpec] = {}
        for spec in specs:
            if spec.name in self.specs:
                raise ManifestError(f"Extension {spec.name} is declared twice")
            self.specs[spec.name] = spec
        self.disabled: set[str] = set(disabled)

    def check_dependencies(self) -> None:
        for spec in self.specs.values():
            for dependency in spec.dependencies:
                if dependency in self.specs:
                    continue
                reason = "disabled" if dependency in self.disabled else ""
                raise UnknownDependency(spec.name, dependency, reason)

    def resolve(self) -> list[ExtensionSpec]:
        """Return every spec such that dependencies come before their dependents.

        Extensions are taken in manifest order and each one is placed right
        after whichever of its dependencies are not placed yet, so the order
        is stable across runs.
        """
        # Dependencies prints missing names instead of raising them
        self.check_dependencies()

        dependencies = Dependencies(
            {name: list(spec.dependencies) for name, spec in self.specs.items()}
        )
        try:
            order = dependencies.resolve_dependencies()
        except CircularDependencyException as exc:
            raise CyclicDependency(self._find_cycle()) from exc

        logger.debug(f"Resolved installation order: {', '.join(order)}")
        return [self.specs[name] for name in order]

    def _find_cycle(self) -> list[str]:
        for start in self.specs:
            stack = [(start, [start])]
            seen: set[str] = set()
            while stack:
                name, path = stack.pop()
                for dependency in self.specs[name].dependencies:
                    if dependency == start:
                        return [*path, start]
                    if dependency not in seen:
                        seen.add(dependency)
                        stack.append((dependency, [*path, dependency]))
        return []

    def resolve_names(self) -> list[str]:
        return [spec.name for spec in self.resolve()]

    def plan(
        self,
        installed: Mapping[str, InstalledExtension],
        lockfile: Lockfile,
        update: bool = False,
        only: Iterable[str] | None = None,
    ) -> list[PlanItem]:
        """Decide per extension whether it must be installed, checked out, updated or kept."""
        selected = set(only) if only is not None else None
        if selected is not None:
            unknown = sorted(selected.difference(self.specs))
            if unknown:
                raise ResolutionError(f"Unknown extension(s): {', '.join(unknown)}")

        items: list[PlanItem] = []
        for spec in self.resolve():
            current = installed.get(spec.name)
            current_ref = current.ref if current else ""
            lock_entry = lockfile.get(spec.name)
            locked_ref = lock_entry.ref if lock_entry else ""

            if spec.source.commit and locked_ref and locked_ref != spec.source.commit:
                logger.warning(
                    f"{spec.name}: pinned commit {spec.source.commit} overrides "
                    f"locked ref {locked_ref}"
                )
            target_ref = spec.source.commit or locked_ref
            if spec.source.kind is SourceKind.LOCAL:
                # local trees cannot be rewound, the lock only records them
                target_ref = ""

            wants_update = update and (selected is None or spec.name in selected)
            if wants_update and not spec.source.commit:
                action = PlanAction.UPDATE if current else PlanAction.INSTALL
                target_ref = ""
            elif current is None:
                action = PlanAction.INSTALL
            elif target_ref and not _same_ref(current_ref, target_ref):
                action = PlanAction.CHECKOUT
            else:
                action = PlanAction.KEEP
            items.append(
                PlanItem(
                    spec=spec,
                    action=action,
                    target_ref=target_ref,
                    installed_ref=current_ref,
                )
            )
        return items


def _same_ref(installed_ref: str, wanted_ref: str) -> bool:
    # allow abbreviated commit pins
    return installed_ref == wanted_ref or (
        len(wanted_ref) >= 7 and installed_ref.startswith(wanted_ref)
    )


def resolve_order(specs: Iterable[ExtensionSpec]) -> list[str]:
    return Resolver(specs).resolve_names()
