"""Domain models and the error taxonomy.

No I/O here; integrations and use cases share these types.
"""
