"""Report Helm releases in a Kubernetes cluster that have chart updates available."""

__version__ = "0.1.0"