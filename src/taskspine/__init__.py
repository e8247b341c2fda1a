"""
Task-spine - async task execution engine.

- taskspine.core: errors, logging, settings, continuation signing, ORM
- taskspine.execution: state machine, stores, scheduler, lifecycle service
"""

__version__ = "0.1.0"
