"""Chat engine: routing, retrieval, responding and thread maintenance."""
