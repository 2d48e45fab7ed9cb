"""Tests for the Risk Appetite & Tolerance engine."""
