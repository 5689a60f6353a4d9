"""Daily evaluation: rules, engine, job handlers and dispatch."""
