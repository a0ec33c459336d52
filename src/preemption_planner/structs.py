"""Resource and allocation types used by the preemption planner.

Pydantic models describing the resources occupied by running allocations and
the resources asked for by a pending job. These are plain value types: the
planner reads them, accumulates copies of them, and never mutates the
instances handed in by the caller.
"""

from pydantic import BaseModel, Field


class NetworkResource(BaseModel):
    """Network bandwidth reserved on a single device."""

    device: str = ""
    ip: str = ""
    mbits: int = Field(0, ge=0)

    def add(self, delta: "NetworkResource") -> None:
        """Add the bandwidth of another network in place."""
        self.mbits += delta.mbits


class Resources(BaseModel):
    """Multi-dimensional resource quantity.

    CPU is in MHz-equivalent shares, memory and disk in MB. Only the first
    entry of ``networks`` takes part in distance and dominance checks.
    """

    cpu: int = Field(0, ge=0)
    memory_mb: int = Field(0, ge=0)
    disk_mb: int = Field(0, ge=0)
    iops: int = Field(0, ge=0)
    networks: list[NetworkResource] = Field(default_factory=list)

    def clone(self) -> "Resources":
        """Return a deep copy that shares no state with this instance."""
        return self.model_copy(deep=True)

    def net_index(self, network: NetworkResource) -> int:
        """Return the index of the network on the same device, or -1."""
        for idx, existing in enumerate(self.networks):
            if existing.device == network.device:
                return idx
        return -1

    def add(self, delta: "Resources") -> None:
        """Accumulate another resource vector into this one in place.

        Scalar dimensions are summed. Networks are merged by device: bandwidth
        on a known device is summed, unknown devices are appended as copies.
        """
        self.cpu += delta.cpu
        self.memory_mb += delta.memory_mb
        self.disk_mb += delta.disk_mb
        self.iops += delta.iops
        for network in delta.networks:
            idx = self.net_index(network)
            if idx == -1:
                self.networks.append(network.model_copy())
            else:
                self.networks[idx].add(network)

    def superset(self, other: "Resources") -> bool:
        """Check whether this vector meets or exceeds ``other`` in every dimension.

        Network bandwidth is compared on the first descriptor only, and only
        when both sides carry one.
        """
        if self.cpu < other.cpu:
            return False
        if self.memory_mb < other.memory_mb:
            return False
        if self.disk_mb < other.disk_mb:
            return False
        if self.iops < other.iops:
            return False
        if self.networks and other.networks:
            if self.networks[0].mbits < other.networks[0].mbits:
                return False
        return True


class Allocation(BaseModel):
    """A running workload instance occupying resources on a node."""

    id: str
    job_id: str = ""
    node_id: str = ""
    job_priority: int
    resources: Resources = Field(default_factory=Resources)
