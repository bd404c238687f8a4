"""
Repository package for data access layers.

- `credential`: stored passkey credentials (memory or SQLAlchemy).
- `user`: boundary to the host user directory. A custom implementation is
  selected with `USER_DIRECTORY_IMPL=module.sub:ClassName`.
"""
