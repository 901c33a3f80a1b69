"""Readers for network and per-element files, VTK writers."""
