"""Command line orchestration for the clinic episode workflows."""
