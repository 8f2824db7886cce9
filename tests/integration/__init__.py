"""Integration test package.

These tests exercise the engine end to end against a temporary SQLite
database, including concurrent submissions from several threads.
"""
