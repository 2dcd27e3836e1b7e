from ulazy.extension_manager import main

if __name__ == "__main__":
    main()
