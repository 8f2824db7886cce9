"""Test suite for the screening consensus engine.

Unit tests cover the pure state machine, kappa statistics, queue
ordering and models; integration tests run against a temporary SQLite
database. To run the tests, execute `pytest` from the project root.
"""
