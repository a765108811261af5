"""
TenantLens

Keeps a cheap, consistent view of a directory/identity tenant:
1. Reads the remote directory API through a retrying client
2. Serves reads from a persistent stale-while-revalidate cache
3. Runs pluggable detectors concurrently and persists their findings
"""

__version__ = "0.1.0"
