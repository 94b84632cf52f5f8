"""hostplane command-line interface."""
