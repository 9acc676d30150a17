"""Building blocks for a forwarding DNS proxy: response caching, upstream exchange, fastest-address selection and DNS64."""

__version__ = "0.1.0"