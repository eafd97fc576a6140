"""TripComposer marketplace core: matching, workload, disputes and trust."""

__version__ = "0.4.0"
