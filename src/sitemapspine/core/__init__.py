"""Core primitives: settings, logging, errors, hashing and persistence."""
