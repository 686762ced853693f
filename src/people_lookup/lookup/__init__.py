"""Batch people-lookup task engine."""
