"""schema-admin command line interface."""
