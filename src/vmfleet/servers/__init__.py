"""Server lifecycle: controller, store, projector and sweeper."""
