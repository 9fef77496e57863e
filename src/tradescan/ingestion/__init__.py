"""Ingestion layer.

This package turns raw scan payloads into validated observation batches.
Only the state layer is allowed to merge them into stored state.
"""

from tradescan.ingestion.payload import ScanBatch, parse_scan_payload, parse_waystone_payload

__all__ = ["ScanBatch", "parse_scan_payload", "parse_waystone_payload"]
