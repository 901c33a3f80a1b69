"""Constitutive laws: wall compliance, blood rheology, phase separation, lymphatics."""
