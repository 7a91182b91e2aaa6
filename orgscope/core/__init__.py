"""Core configuration, identity and authorization."""
