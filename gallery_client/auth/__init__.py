"""
Authentication package for the VRChat Avatar Gallery client.

This package contains the encrypted, per-user credential store and the
session client that owns the bearer token and its silent refresh.
"""
