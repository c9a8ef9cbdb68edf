"""Executors for the external processing APIs."""
