"""Status API of the controller."""
