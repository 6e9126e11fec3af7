from prometheus_client import Counter


objects_processed_total = Counter(
    "meta_objects_processed",
    "Total objects processed",
    ["status", "operation"],
)

listing_errors_total = Counter(
    "meta_listing_errors",
    "Failures while listing or describing source objects",
)

index_retries_total = Counter(
    "meta_index_retries",
    "Index transactions re-run after a serialization conflict",
    ["operation"],
)
