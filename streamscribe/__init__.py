"""Real-time microphone-to-transcript streaming daemon."""
