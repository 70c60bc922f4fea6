"""Command line tool for kuberun."""
