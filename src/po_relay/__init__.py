"""po-relay - persistence layer for the order-to-purchase-order converter.

This package provides:
- A retrying S3/R2 object store client with a public-URL fallback
- Resolution of opaque file references to stored object keys
- A size and TTL bounded local cache for uploaded files
"""

__version__ = "0.1.0"
