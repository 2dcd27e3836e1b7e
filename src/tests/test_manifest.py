from __future__ import annotations

from pathlib import Path

import pytest

from ulazy.exceptions import ManifestError
from ulazy.manifest import derive_name, expand_source, load_manifest, parse_manifest
from ulazy.models import SourceKind, Trigger, TriggerKind


def test_expand_source_turns_shorthand_into_github_url() -> None:
    assert expand_source("owner/repo") == "https://github.com/owner/repo.git"
    assert expand_source(" owner/repo ") == "https://github.com/owner/repo.git"
    assert expand_source("https://example.com/a.git") == "https://example.com/a.git"
    assert expand_source("git@example.com:a/b.git") == "git@example.com:a/b.git"


def test_expand_source_keeps_existing_relative_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    tmp_path.joinpath("vendor", "ext").mkdir(parents=True)
    monkeypatch.chdir(tmp_path)

    assert expand_source("vendor/ext") == "vendor/ext"


@pytest.mark.parametrize(
    ("uri", "expected"),
    [
        ("https://github.com/owner/telescope.git", "telescope"),
        ("https://example.com/releases/tool.tar.gz", "tool"),
        ("git@example.com:owner/repo.git", "repo"),
        ("file:///home/me/ext/", "ext"),
        ("/srv/extensions/local-ext", "local-ext"),
    ],
)
def test_derive_name(uri: str, expected: str) -> None:
    assert derive_name(uri) == expected


def test_parse_manifest_keeps_declaration_order_and_fields() -> None:
    manifest = parse_manifest(
        [
            "owner/alpha",
            {
                "url": "https://example.com/beta.git",
                "branch": "main",
                "cmd": ["Beta", "BetaOpen"],
                "ft": "python",
                "keys": ["<leader>b", {"lhs": "gb", "mode": ["n", "v"]}],
                "event": "BufRead",
                "config": {"theme": "dark"},
                "build": "make",
                "main": "beta.core:init",
            },
        ]
    )

    assert manifest.names() == ["alpha", "beta"]
    alpha, beta = manifest.specs
    assert alpha.source.uri == "https://github.com/owner/alpha.git"
    assert alpha.source.kind is SourceKind.GIT
    assert alpha.eager is True

    assert beta.source.branch == "main"
    assert beta.build == "make"
    assert dict(beta.config) == {"theme": "dark"}
    assert beta.entry_point == ("beta.core", "init")
    assert beta.eager is False
    assert beta.triggers == (
        Trigger(TriggerKind.COMMAND, "Beta"),
        Trigger(TriggerKind.COMMAND, "BetaOpen"),
        Trigger(TriggerKind.FILETYPE, "python"),
        Trigger(TriggerKind.EVENT, "BufRead"),
        Trigger(TriggerKind.KEY, "<leader>b", "n"),
        Trigger(TriggerKind.KEY, "gb", "n"),
        Trigger(TriggerKind.KEY, "gb", "v"),
    )


def test_parse_manifest_accepts_options_mapping() -> None:
    manifest = parse_manifest(
        {
            "options": {"root": "/data", "lockfile": "lock.json", "concurrency": 3},
            "extensions": [{"dir": "/srv/ext", "name": "ext", "lazy": True}],
        }
    )

    assert manifest.options.root == "/data"
    assert manifest.options.lockfile == "lock.json"
    assert manifest.options.concurrency == 3
    assert manifest.get("ext").lazy is True
    assert manifest.get("ext").source.kind is SourceKind.LOCAL


def test_parse_manifest_rejects_duplicate_names() -> None:
    with pytest.raises(ManifestError, match="duplicate extension name 'alpha'"):
        parse_manifest(["owner/alpha", {"url": "https://example.com/alpha.git"}])


def test_parse_manifest_hoists_inline_dependencies() -> None:
    manifest = parse_manifest(
        [
            {
                "url": "owner/app",
                "dependencies": ["owner/lib", "helper"],
            },
            {"dir": "/srv/helper", "name": "helper"},
        ]
    )

    assert manifest.names() == ["lib", "app", "helper"]
    assert manifest.get("app").dependencies == ("lib", "helper")


def test_parse_manifest_allows_restating_a_hoisted_dependency() -> None:
    manifest = parse_manifest(
        [
            {"1": "owner/app", "dependencies": ["owner/lib"]},
            {"1": "owner/lib", "config": {"x": 1}},
        ]
    )

    assert manifest.names() == ["lib", "app"]
    assert dict(manifest.get("lib").config) == {"x": 1}


def test_parse_manifest_rejects_conflicting_dependency_sources() -> None:
    with pytest.raises(ManifestError, match="conflicting sources"):
        parse_manifest(
            [
                {"1": "owner/app", "dependencies": ["owner/lib"]},
                {"url": "https://example.com/lib.git", "name": "lib"},
            ]
        )


def test_parse_manifest_moves_disabled_extensions_aside() -> None:
    manifest = parse_manifest(["owner/alpha", {"1": "owner/beta", "enabled": False}])

    assert manifest.names() == ["alpha"]
    assert manifest.disabled == ["beta"]
    assert "beta" not in manifest


@pytest.mark.parametrize(
    ("entry", "message"),
    [
        ({"url": "owner/a", "colour": "red"}, "unknown keys colour"),
        ({"name": "nosource"}, "has no source"),
        ({"url": "owner/a", "branch": "main", "tag": "v1"}, "mutually exclusive"),
        ({"dir": "/srv/a", "commit": "abcdef1"}, "only apply to git sources"),
        ({"url": "owner/a", "lazy": "yes"}, "'lazy' must be a boolean"),
        ({"url": "owner/a", "config": ["x"]}, "'config' must be a mapping"),
        ({"url": "owner/a", "name": "../evil"}, "invalid extension name"),
        ({"url": "owner/a", "keys": [{"mode": "n"}]}, "missing 'lhs'"),
        (42, "expected a string or a mapping"),
    ],
)
def test_parse_manifest_rejects_malformed_entries(entry: object, message: str) -> None:
    with pytest.raises(ManifestError, match=message):
        parse_manifest([entry])


def test_parse_manifest_rejects_invalid_options() -> None:
    with pytest.raises(ManifestError, match="positive integer"):
        parse_manifest({"options": {"concurrency": 0}, "extensions": []})
    with pytest.raises(ManifestError, match="must be a list"):
        parse_manifest({"extensions": "owner/a"})


def test_load_manifest_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "extensions.yaml"
    path.write_text(
        "extensions:\n"
        "  - owner/alpha\n"
        "  - url: owner/beta\n"
        "    ft: [rust, toml]\n",
        encoding="utf-8",
    )

    manifest = load_manifest(path)

    assert manifest.origin == str(path)
    assert manifest.names() == ["alpha", "beta"]
    assert len(manifest.get("beta").triggers) == 2


def test_load_manifest_accepts_numeric_positional_keys(tmp_path: Path) -> None:
    path = tmp_path / "extensions.yaml"
    path.write_text(
        "extensions:\n"
        "  - 1: owner/gamma\n"
        "    cmd: Gamma\n"
        "    keys:\n"
        "      - {1: \"<leader>g\", mode: [n, v]}\n",
        encoding="utf-8",
    )

    manifest = load_manifest(path)

    assert manifest.names() == ["gamma"]
    assert manifest.get("gamma").source.kind is SourceKind.GIT
    assert Trigger(TriggerKind.KEY, "<leader>g", "v") in manifest.get("gamma").triggers


def test_load_manifest_treats_empty_file_as_empty_manifest(tmp_path: Path) -> None:
    path = tmp_path / "extensions.yaml"
    path.write_text("", encoding="utf-8")

    assert len(load_manifest(path)) == 0


def test_load_manifest_errors(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="Manifest not found"):
        load_manifest(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("extensions: [owner/a\n", encoding="utf-8")
    with pytest.raises(ManifestError, match="Invalid YAML"):
        load_manifest(broken)
