"""Building blocks for lightweight Linux virtual machines: guest port discovery, SSH port forwarding, readiness checks, cloud-init data and image downloads."""

__version__ = "1.0.0"