"""Organising universe classification platform."""
