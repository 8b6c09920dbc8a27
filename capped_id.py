import argparse
import sys
import docker
import pymongo.errors

from catalog_probe import CatalogProbe
from cluster import Cluster
from errors import InfrastructureError, InvariantMismatchError, SetupInvariantError
from scenarios import DEFAULT_CASES, run_cases

# Checks _id index presence on capped collections across the replicaset:
# 0) capped collection created on the primary has no _id index on any node
# 1) normal collection converted to capped loses _id index on primary only
#
# docker-compose run test python capped_id.py
# docker-compose run test python capped_id.py --case convert_to_capped --keep

INFRASTRUCTURE_ERRORS = (InfrastructureError, docker.errors.DockerException, pymongo.errors.PyMongoError)


# replicaset needs an odd number of voting members and at least two secondaries
def node_count(value):
    count = int(value)
    if count < 3 or count % 2 == 0:
        raise argparse.ArgumentTypeError(f"node count must be odd and at least 3, got {count}")
    return count


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Verify _id index presence on capped collections across a replica set")
    parser.add_argument("--nodes", type=node_count, default=3, help="number of replica set members, odd and at least 3")
    parser.add_argument("--case", action="append", choices=[case.case_id for case in DEFAULT_CASES],
                        help="run only the given case, can be repeated")
    parser.add_argument("--legacy-catalog", action="store_true", default=None,
                        help="query system.indexes instead of listIndexes")
    parser.add_argument("--keep", action="store_true", help="leave the containers running after the run")
    return parser.parse_args(argv)


def select_cases(case_ids):
    if not case_ids:
        return list(DEFAULT_CASES)
    return [case for case in DEFAULT_CASES if case.case_id in case_ids]


def exit_code(error):
    if isinstance(error, (InvariantMismatchError, SetupInvariantError)):
        return error.exit_code
    return InfrastructureError.exit_code


def describe(error):
    if isinstance(error, InvariantMismatchError):
        return "Invariant mismatch"
    if isinstance(error, SetupInvariantError):
        return "Scenario setup invariant failed"
    return "Infrastructure error"


def main(argv=None):
    args = parse_args(argv)
    cases = select_cases(args.case)
    try:
        cluster = Cluster.bootstrap(args.nodes)
    except INFRASTRUCTURE_ERRORS as e:
        Cluster.log(f"{describe(e)} while starting replicaset: {e}")
        return exit_code(e)
    try:
        run_cases(cluster, cases, probe=CatalogProbe(legacy_catalog=args.legacy_catalog))
    except INFRASTRUCTURE_ERRORS + (SetupInvariantError, InvariantMismatchError) as e:
        Cluster.log(f"{describe(e)}:\n{e}")
        return exit_code(e)
    finally:
        if args.keep:
            Cluster.log("Leaving containers running: " + ", ".join(cluster.mongod_hosts))
        else:
            cluster.shutdown()
    Cluster.log(f"All {len(cases)} cases passed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
