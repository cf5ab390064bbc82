"""Command line tool for the observability operator."""
