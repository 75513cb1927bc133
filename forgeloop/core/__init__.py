"""Headless correction engine for forgeloop.

Everything in this package works on a workspace directory and has no HTTP or
UI dependencies.
"""
