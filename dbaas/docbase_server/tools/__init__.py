"""Command line tools for Docbase."""
