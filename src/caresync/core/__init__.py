"""CareSync core utilities."""
