"""Network mesh, topology, geometry state and unknown layouts."""
