"""auth/ -- Credential and token lifecycle core for authkeeper.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/. Settings objects are passed in.
api/ and main.py import from auth/, not the other way around.
"""
