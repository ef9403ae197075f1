"""AI-narrated text adventure with a semantic memory of past events."""
