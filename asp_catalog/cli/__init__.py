"""ASP Catalog command line interface."""
