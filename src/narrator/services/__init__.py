"""Domain services used by the narration pipeline."""
