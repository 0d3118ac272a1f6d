"""Model-facing runtime (providers, tools, turn runner) and the REST surface."""
