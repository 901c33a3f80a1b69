"""
Tests for the microcirculation package.
"""
