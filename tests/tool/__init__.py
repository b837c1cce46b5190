"""Tests for the component-installer command line tool."""
