"""Command line tool for component-installer."""
