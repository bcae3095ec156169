"""Caching proxy service: policy, cache store, origin fetcher and HTTP surface."""
