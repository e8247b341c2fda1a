"""Core building blocks: errors, logging, settings, signing and ORM."""
