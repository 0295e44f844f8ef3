"""Step sources and the reconciler that merges them."""
