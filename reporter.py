from collections import namedtuple

from cluster import Cluster
from errors import InvariantMismatchError, format_catalog

Mismatch = namedtuple("Mismatch", ["node", "expected", "observed"])


def print_catalog(dumps):
    Cluster.log("Index catalog per node:\n" + format_catalog(dumps))


# compares every node, a node missing on either side counts as a mismatch
def find_mismatches(expected, observed):
    labels = list(expected) + [label for label in observed if label not in expected]
    mismatches = []
    for label in labels:
        if expected.get(label) != observed.get(label):
            mismatches.append(Mismatch(label, expected.get(label), observed.get(label)))
    return mismatches


def verify(case_id, namespace, expected, observed, dumps=None):
    mismatches = find_mismatches(expected, observed)
    if not mismatches:
        Cluster.log(f"[{case_id}] {namespace}: _id index presence {observed} is as expected")
        return
    for m in mismatches:
        Cluster.log(f"[{case_id}] {namespace}: {m.node} expected _id index={m.expected}, observed={m.observed}")
    raise InvariantMismatchError(case_id, str(namespace), expected, observed, mismatches, dumps)


def report_success(case_id):
    Cluster.log(f"capped_id Test # {case_id} SUCCESS")
