"""Order, checkout and payment lifecycle engine."""
