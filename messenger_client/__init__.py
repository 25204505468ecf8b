"""Command-line messenger client."""
