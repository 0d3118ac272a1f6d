"""Agent definitions, the in-memory registry and the engine that runs them."""
