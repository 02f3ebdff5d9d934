"""Core utilities shared by every layer of taskseries."""
