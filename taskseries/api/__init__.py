"""HTTP surface for taskseries."""
