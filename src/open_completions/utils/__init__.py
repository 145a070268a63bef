"""HTTP and stream-parsing helpers for Open Completions."""
