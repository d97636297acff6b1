"""Helpers shared by the API and the CLI:
- validators.py: loan input validation
- ui_helpers.py: CLI output rendering
"""
