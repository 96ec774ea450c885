"""Job scheduling and fan-out."""
