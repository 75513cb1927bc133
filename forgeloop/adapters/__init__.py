"""Adapters to external services used by the correction loop."""
