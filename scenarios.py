import enum
from collections import namedtuple

import reporter
from catalog_probe import CatalogProbe, Namespace, ID_KEY
from cluster import Cluster
from errors import SetupInvariantError

DB_NAME = "dbname"
CAPPED_SIZE = 1024
DOCUMENT_COUNT = 500
DOCUMENT = {"a": 1000}


class State(enum.Enum):
    IDLE = "Idle"
    NAMESPACE_RESET = "NamespaceReset"
    PRIMARY_MUTATED = "PrimaryMutated"
    REPLICATION_SETTLED = "ReplicationSettled"
    PROBED = "Probed"
    VERIFIED = "Verified"


ScenarioResult = namedtuple("ScenarioResult", ["case_id", "namespace", "expected", "observed", "dumps", "states"])


def no_id_index_anywhere(primary, secondaries):
    expected = {primary.label: False}
    expected.update({node.label: False for node in secondaries})
    return expected


# convertToCapped drops _id index on primary only, secondaries keep it
def id_index_on_secondaries_only(primary, secondaries):
    expected = {primary.label: False}
    expected.update({node.label: True for node in secondaries})
    return expected


class ScenarioCase:
    """
    One pass of the driver: the collection to build on the primary and the
    _id index presence expected on each node afterwards.

    capped_at_create creates the collection capped with `size`, otherwise it
    is created normal and, if convert_size is set, converted to capped after
    it has been populated and replicated.
    """
    def __init__(self, case_id, collection, expected, capped_at_create=False, size=CAPPED_SIZE,
                 convert_size=None, documents=DOCUMENT_COUNT, document=None, db=DB_NAME):
        self.case_id = case_id
        self.namespace = Namespace(db, collection)
        self.expected = expected
        self.capped_at_create = capped_at_create
        self.size = size
        self.convert_size = convert_size
        self.documents = documents
        self.document = document if document is not None else DOCUMENT
        if capped_at_create and (not size or size <= 0):
            raise ValueError(f"{case_id}: capped collection requires a positive size, got {size}")
        if convert_size is not None and convert_size <= 0:
            raise ValueError(f"{case_id}: convertToCapped requires a positive size, got {convert_size}")
        if documents < 0:
            raise ValueError(f"{case_id}: document count can't be negative")

    def __repr__(self):
        return f"ScenarioCase({self.case_id}, {self.namespace})"


DEFAULT_CASES = [
    ScenarioCase("capped_create", "coll0", no_id_index_anywhere, capped_at_create=True, size=CAPPED_SIZE),
    ScenarioCase("convert_to_capped", "coll1", id_index_on_secondaries_only, convert_size=CAPPED_SIZE),
]


def populate(db, coll, count, document):
    if count:
        db[coll].insert_many([dict(document) for _ in range(count)])


def catalog_dumps(probe, nodes, db_name):
    return {node.label: probe.catalog_dump(node, db_name) for node in nodes}


def run_case(cluster, case, probe=None):
    probe = probe or CatalogProbe()
    ns = case.namespace
    states = [State.IDLE]

    def enter(state):
        states.append(state)
        Cluster.log(f"[{case.case_id}] {ns}: {state.value}")

    Cluster.log(f"[{case.case_id}] {ns}: {State.IDLE.value}")
    nodes = [cluster.primary()] + cluster.secondaries()
    primary, secondaries = nodes[0], nodes[1:]
    db = primary.client[ns.db]

    db.drop_collection(ns.coll)
    cluster.await_replication()
    # no index of any key may survive the drop on any node
    dumps = catalog_dumps(probe, nodes, ns.db)
    leftovers = {label: [index["name"] for index in indexes if index.get("ns") == str(ns)]
                 for label, indexes in dumps.items()}
    if any(leftovers.values()):
        raise SetupInvariantError(case.case_id, ns, f"indexes left after drop: {leftovers}", dumps)
    enter(State.NAMESPACE_RESET)

    if case.capped_at_create:
        db.command("create", ns.coll, capped=True, size=case.size)
        populate(db, ns.coll, case.documents, case.document)
    else:
        db.command("create", ns.coll)
        populate(db, ns.coll, case.documents, case.document)
        if case.convert_size is not None:
            cluster.await_replication()
            count = probe.count_indexes(primary, ns, ID_KEY)
            if count != 1:
                raise SetupInvariantError(case.case_id, ns,
                                          f"primary has {count} _id indexes on normal collection, expected 1",
                                          catalog_dumps(probe, nodes, ns.db))
            db.command("convertToCapped", ns.coll, size=case.convert_size)
    enter(State.PRIMARY_MUTATED)

    cluster.await_replication()
    enter(State.REPLICATION_SETTLED)

    observed = {node.label: probe.index_exists(node, ns, ID_KEY) for node in nodes}
    dumps = catalog_dumps(probe, nodes, ns.db)
    reporter.print_catalog(dumps)
    enter(State.PROBED)

    expected = case.expected(primary, secondaries)
    reporter.verify(case.case_id, ns, expected, observed, dumps)
    enter(State.VERIFIED)
    reporter.report_success(case.case_id)
    return ScenarioResult(case.case_id, ns, expected, observed, dumps, states)


# cases share the cluster and run one after another, the first failure stops the run
def run_cases(cluster, cases=None, probe=None):
    probe = probe or CatalogProbe()
    results = []
    for case in cases if cases is not None else DEFAULT_CASES:
        results.append(run_case(cluster, case, probe=probe))
    return results
