"""Tests for the Rally engine."""
