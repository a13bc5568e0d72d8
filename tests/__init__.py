"""Test suite for the compliance core."""
