"""Command-line entry points for the batch jobs."""
