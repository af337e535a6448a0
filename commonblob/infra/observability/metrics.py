from prometheus_client import Counter, Histogram

# Low-cardinality labels only: provider, operation name and error class, never keys.
OPERATIONS = Counter(
    "blob_storage_operations_total",
    "Total object storage operations",
    ["provider", "operation", "outcome"],
)

LATENCY = Histogram(
    "blob_storage_operation_duration_seconds",
    "Object storage operation latency in seconds",
    ["provider", "operation"],
)

STREAM_BYTES = Counter(
    "blob_storage_stream_bytes_total",
    "Bytes moved through streaming reader and writer handles",
    ["provider", "direction"],
)
