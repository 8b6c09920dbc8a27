from bson import json_util

# Failures of a run, exit_code is the status capped_id.py exits with

def format_catalog(dumps):
    """
    Renders {label: [index documents]} as the per-node trace printed after
    every case and attached to failures.
    """
    lines = []
    for label, indexes in dumps.items():
        lines.append(f"**********{label} indexes:**********")
        for index in indexes:
            lines.append(json_util.dumps(index))
        lines.append("")
    return "\n".join(lines)


class InfrastructureError(Exception):
    exit_code = 3


class BootstrapTimeoutError(InfrastructureError):
    pass


class ElectionError(InfrastructureError):
    pass


class ReplicationTimeoutError(InfrastructureError, TimeoutError):
    pass


class ProbeError(InfrastructureError):
    def __init__(self, host, namespace, cause):
        self.host = host
        self.namespace = namespace
        self.cause = cause
        super().__init__(f"catalog probe on {host} for {namespace} failed: {cause}")


class SetupInvariantError(AssertionError):
    exit_code = 2

    def __init__(self, case_id, namespace, message, dumps=None):
        self.case_id = case_id
        self.namespace = namespace
        self.dumps = dumps or {}
        lines = [f"[{case_id}] {namespace}: {message}"]
        if self.dumps:
            lines.append(format_catalog(self.dumps))
        super().__init__("\n".join(lines))


class InvariantMismatchError(AssertionError):
    exit_code = 1

    def __init__(self, case_id, namespace, expected, observed, mismatches, dumps=None):
        self.case_id = case_id
        self.namespace = namespace
        self.expected = expected
        self.observed = observed
        self.mismatches = mismatches
        self.dumps = dumps or {}
        lines = [f"[{case_id}] _id index mismatch on {namespace}",
                 f"expected: {expected}",
                 f"observed: {observed}"]
        for m in mismatches:
            lines.append(f"  {m.node}: expected {m.expected}, got {m.observed}")
        if self.dumps:
            lines.append(format_catalog(self.dumps))
        super().__init__("\n".join(lines))
