"""Session grading and voice conversation correlation backend."""
