#!/usr/bin/env python3
"""
Upsert Load Generator

Drives a key-value backend with a steady synthetic write load and reports
aggregate throughput and latency.

Features:
- Global target rate split evenly across independent virtual clients
- Disjoint, cyclically reused key partition per client
- Per-second pacing with fire-and-forget asynchronous upserts
- Periodic "write qps / delay" reports and an end-of-run summary
- Redis (standalone, cluster, TLS) or in-memory backend
- Optional OpenTelemetry metrics export
- Environment variable and YAML/JSON configuration support
"""

from cli import cli

if __name__ == '__main__':
    cli()
