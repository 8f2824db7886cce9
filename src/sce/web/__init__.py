"""Web API for the screening consensus engine."""
