"""orgscope: organizational management API with row-level authorization."""
