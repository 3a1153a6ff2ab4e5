"""Job queue, dispatch worker and batch aggregation."""
