import os
import time
import pymongo.errors
from collections import namedtuple

from cluster import Cluster
from errors import ProbeError

ID_KEY = {"_id": 1}

# NamespaceNotFound
NAMESPACE_NOT_FOUND = 26


class Namespace(namedtuple("Namespace", ["db", "coll"])):
    __slots__ = ()

    def __new__(cls, db, coll):
        if not db or not coll:
            raise ValueError(f"Namespace requires database and collection names, got {db!r}.{coll!r}")
        return super().__new__(cls, db, coll)

    @classmethod
    def parse(cls, ns):
        db, _, coll = ns.partition(".")
        return cls(db, coll)

    def __str__(self):
        return f"{self.db}.{self.coll}"


def same_key(index_key, key_pattern):
    return list(index_key.items()) == list(key_pattern.items())


class CatalogProbe:
    """
    Read-only queries against the index catalog of a single node.

    Two catalogs are supported: the listIndexes command, available on every
    current server, and the legacy system.indexes collection which is queried
    by {key, ns}. A namespace that doesn't exist has no indexes. Connection
    errors are retried a few times and then raised as ProbeError, they are
    never reported as a missing index.
    """
    def __init__(self, legacy_catalog=None, retries=3, retry_interval=0.5):
        if legacy_catalog is None:
            legacy_catalog = os.environ.get("CAPPED_ID_LEGACY_CATALOG", "").lower() == "true"
        self.legacy_catalog = legacy_catalog
        self.retries = retries
        self.retry_interval = retry_interval

    def _run(self, node, namespace, query):
        attempt = 0
        while True:
            attempt += 1
            try:
                return query()
            except pymongo.errors.ConnectionFailure as e:
                if attempt >= self.retries:
                    raise ProbeError(node.host, namespace, e) from e
                Cluster.log(f"Catalog probe on {node.host} failed, attempt {attempt}/{self.retries}: {e}")
                time.sleep(self.retry_interval)
            except pymongo.errors.OperationFailure as e:
                if e.code == NAMESPACE_NOT_FOUND:
                    return []
                raise ProbeError(node.host, namespace, e) from e

    def _list_indexes(self, node, namespace):
        return list(node.client[namespace.db][namespace.coll].list_indexes())

    def matching_indexes(self, node, namespace, key_pattern=ID_KEY):
        if self.legacy_catalog:
            query = lambda: list(node.client[namespace.db]["system.indexes"].find(
                {"key": key_pattern, "ns": str(namespace)}))
        else:
            query = lambda: [index for index in self._list_indexes(node, namespace)
                             if same_key(index["key"], key_pattern)]
        return self._run(node, namespace, query)

    def count_indexes(self, node, namespace, key_pattern=ID_KEY):
        return len(self.matching_indexes(node, namespace, key_pattern))

    def index_exists(self, node, namespace, key_pattern=ID_KEY):
        count = self.count_indexes(node, namespace, key_pattern)
        Cluster.log(f"{node.label} ({node.host}): {count} index(es) with key {key_pattern} on {namespace}")
        return count == 1

    # every index of every collection in the database, with ns filled in
    def catalog_dump(self, node, db_name):
        db = node.client[db_name]
        if self.legacy_catalog:
            return self._run(node, db_name, lambda: list(db["system.indexes"].find()))

        def dump():
            indexes = []
            for coll_name in sorted(db.list_collection_names()):
                for index in db[coll_name].list_indexes():
                    index = dict(index)
                    index.setdefault("ns", f"{db_name}.{coll_name}")
                    indexes.append(index)
            return indexes
        return self._run(node, db_name, dump)


def index_exists(node, namespace, key_pattern=ID_KEY, probe=None):
    return (probe or CatalogProbe()).index_exists(node, namespace, key_pattern)
