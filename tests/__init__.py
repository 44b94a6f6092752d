"""Tests for timebox."""
