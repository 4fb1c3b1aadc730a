from gopro_gps_batch.models import StreamCatalog


def select_gps_keys(catalog: StreamCatalog, prefix: str = "GPS") -> list[str]:
    """Stream keys whose name starts with *prefix* (case-insensitive), first-seen order."""
    prefix = prefix.upper()
    return [key for key in catalog.keys() if key.upper().startswith(prefix)]
