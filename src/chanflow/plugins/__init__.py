"""
Command plugins loaded by the chanflow CLI.
"""
