"""po-relay command-line interface."""
