"""Engine core: models, registries, processor and dispatcher.

The dispatcher owns the in-memory queues; everything durable lives in the
store so that a restarted engine can pick up where the previous one stopped.
"""
