"""
flexfuse: lifecycle manager for the privileged FUSE helper containers a volume
plugin runs on containerd.
"""

__version__ = "0.1.0"
