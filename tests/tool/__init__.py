"""Tests for the kuberun command line tool."""
