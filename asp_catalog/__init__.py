"""ASP Catalog - raw-data ingestion and identity resolution for affiliate product feeds."""

__version__ = "0.1.0"
