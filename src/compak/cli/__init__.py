"""compak command-line interface."""
