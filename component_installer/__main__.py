"""Run the component-installer command line tool."""

from component_installer.tool.installer import main

if __name__ == "__main__":
    main()
