"""
Feature modules live under this package.

Keep module boundaries clean: each module should own its models/service/api,
while reusing platform primitives (auth, DB session, outcome envelope).
"""
