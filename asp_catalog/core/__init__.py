"""Core domain models and enums for ASP Catalog."""
