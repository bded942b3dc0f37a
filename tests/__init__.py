"""
Test suite for fieldsync.

Unit tests cover the schema model, diff and merge engines, the
reconciliation session, column scanners, stores, events, configuration
and the CLI.
"""
