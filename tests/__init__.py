"""Test suite for litestar-bpm."""
