"""Merkle distributor — commit to a recipient list by its root, settle claims exactly once."""
