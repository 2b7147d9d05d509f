"""HTTP surface for the screening consensus engine."""
