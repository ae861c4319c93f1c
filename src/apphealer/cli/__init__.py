"""AppHealer command line interface."""
