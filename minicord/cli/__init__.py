"""CLI module for minicord."""
