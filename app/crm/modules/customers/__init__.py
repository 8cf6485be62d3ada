"""
Customers module (authenticated JSON API).

Scope:
- Customers create / scroll search / detail / update
- Append-only customer history snapshot written on every update
- Ownership transfers to whoever performs the update
"""
