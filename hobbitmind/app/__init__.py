"""Turn handling that ties narrator answers to game state."""
