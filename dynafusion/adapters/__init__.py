"""
Adapters for the engine's external collaborators: the backing store and
value serialization.
"""
