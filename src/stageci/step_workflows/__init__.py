"""Built-in step actions: checkout, artifacts, intercept, deploy."""
