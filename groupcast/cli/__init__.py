"""CLI module for groupcast."""
