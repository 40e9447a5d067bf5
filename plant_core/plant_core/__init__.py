"""Domain models, aggregation logic and persistence for PLANT Metrics."""
