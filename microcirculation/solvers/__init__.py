"""Linear solver wrapper and the fixed-point coupling driver."""
