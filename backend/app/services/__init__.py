"""Drop engine services: store, catalog, publisher, scheduling, lifecycle, broadcast."""
