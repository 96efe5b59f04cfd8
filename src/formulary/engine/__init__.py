"""
The `engine` sub-package contains the moving parts of an installation.

This includes:
- Running external build commands in a restricted, output-bounded sandbox.
- Fetching formula sources with git or curl.
- Orchestrating plans: locks, lifecycle states and receipts.
"""
