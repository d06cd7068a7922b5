"""
Custom logging formats that contain more detailed upgr8 logs
"""

# First Party
from alog import AlogJsonFormatter


class Upgr8JsonFormatter(AlogJsonFormatter):
    """Log format that extends AlogJsonFormatter with the identity of the
    ManagedApplication being reconciled, the reconciliation id, the current
    upgrade phase and thread information
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "process",
        "thread",
        "threadName",
        "kind",
        "apiVersion",
        "resourceVersion",
        "resourceName",
        "reconciliationId",
        "phase",
    ]

    def __init__(self, manifest=None, reconciliation_id=None):
        super().__init__()
        self.manifest = manifest
        self.reconciliation_id = reconciliation_id

    def format(self, record):
        if self.reconciliation_id:
            record.reconciliationId = self.reconciliation_id

        if resource := getattr(record, "resource", self.manifest):
            record.kind = resource.get("kind")
            record.apiVersion = resource.get("apiVersion")

            metadata = resource.get("metadata", {})
            record.resourceVersion = metadata.get("resourceVersion")
            record.resourceName = metadata.get("name")

            if not hasattr(record, "phase"):
                record.phase = (resource.get("status") or {}).get("phase")

        return super().format(record)
