"""AI CLI engines used to implement individual tasks."""
