import pytest
import docker

from cluster import Cluster

def pytest_addoption(parser):
    parser.addoption("--jenkins", action="store_true", default=False, help="Run tests marked as jenkins")
    parser.addoption("--nodes", action="store", type=int, default=3, help="Number of replicaset members")

def pytest_collection_modifyitems(config, items):
    if config.getoption("--jenkins"):
        return
    skip_jenkins = pytest.mark.skip(reason="Skipped because --jenkins flag not set")
    for item in items:
        if "jenkins" in item.keywords:
            item.add_marker(skip_jenkins)

def cleanup_all_test_containers(config):
    """
    Cleanup leftover containers of the replicaset from previous runs
    """
    try:
        docker_client = docker.from_env()
        hosts = {member['host'] for member in config['members']}
        for container in docker_client.containers.list(all=True):
            if container.name in hosts:
                try:
                    container.remove(v=True, force=True)
                    Cluster.log(f"Cleaned up leftover container: {container.name}")
                except docker.errors.NotFound:
                    pass
    except docker.errors.DockerException as e:
        Cluster.log(f"Warning: Error during test container cleanup: {e}")

@pytest.fixture(scope="module")
def config(request):
    return Cluster.replicaset_config(request.config.getoption("--nodes"))

@pytest.fixture(scope="module")
def cluster(config):
    return Cluster(config)

@pytest.fixture(scope="module")
def start_cluster(cluster, config):
    cleanup_all_test_containers(config)
    try:
        cluster.create()
        yield True
    finally:
        cluster.shutdown()
