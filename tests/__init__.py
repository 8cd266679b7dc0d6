"""Tests for the UPnP gateway control point."""
