"""Control interfaces for the systems a pass mutates."""
