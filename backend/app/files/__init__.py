"""File upload and storage module for room chat.

This module receives file uploads over HTTP and serves them back for
download. Chat messages never carry file bytes: a file message only holds
the ``{url, mimeType}`` reference returned by the upload endpoint.

Files are stored in a local directory with an in-memory index; both are
process-lifetime only.
"""
