"""Bundled demo tool provider (weather and calculator) for trying the client."""
