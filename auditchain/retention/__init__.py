"""Time partitioning and copy-then-mark archival."""

from auditchain.retention.partitions import Partition, PartitionManager, add_years, partition_for
from auditchain.retention.sinks import ArchiveSink, FileArchiveSink

__all__ = [
    "ArchiveSink",
    "FileArchiveSink",
    "Partition",
    "PartitionManager",
    "add_years",
    "partition_for",
]
