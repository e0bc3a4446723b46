"""Large-file ingestion pipeline for the Furvino STACK storage backend."""

__version__ = "0.1.0"
