"""Bootstrap an Argo CD control plane and app-of-apps release onto a fresh cluster."""

__version__ = "0.1.0"
