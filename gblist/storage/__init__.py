"""Transactional persistence for denylist records."""
