"""nvdoctor - NVIDIA driver diagnostics and automatic remediation."""

__version__ = "0.3.0"
