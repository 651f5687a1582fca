"""ContextBridge command-line interface."""
