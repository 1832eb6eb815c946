"""Workspace and server operations for the CLI.

Each module provides plain functions that encapsulate the business logic
of one command family.  Managers accept an ``AppContext`` as a parameter
and raise domain exceptions (``nebi.local.errors``), never click
exceptions -- that translation is the CLI's responsibility.
"""
