"""Counselbot test suite."""
