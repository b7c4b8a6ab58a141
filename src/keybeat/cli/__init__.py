"""Keybeat CLI -- ``keybeat start | list | next | check | clear``."""
