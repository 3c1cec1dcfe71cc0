"""Gang-scheduling strategy interface."""

import abc


class BatchScheduler(abc.ABC):
    """Attaches gang-scheduling placement to a cluster's desired units."""

    name = ""

    def validate(self, cluster):
        """Raise ConfigurationError when the cluster's policy is unusable."""

    @abc.abstractmethod
    def placement_unit(self, cluster):
        """Return the placement-group Unit for ``cluster``, or None."""

    @abc.abstractmethod
    def annotate(self, unit, cluster, placement):
        """Point a pod unit at ``placement`` (may be None)."""


class DefaultBatchScheduler(BatchScheduler):
    """No gang scheduling: the platform's default scheduler places pods."""

    name = "default"

    def placement_unit(self, cluster):
        return None

    def annotate(self, unit, cluster, placement):
        return unit
