import testinfra
import time
import docker
import pymongo
import pymongo.errors
import json
import copy
import os
import psutil
from datetime import datetime

from errors import BootstrapTimeoutError, ElectionError, ReplicationTimeoutError

# the structure of the cluster is
# { _id: "rsname", members: [{host: "host", priority: int, votes: int}, ...]}
# https://www.mongodb.com/docs/manual/reference/replica-configuration/#std-label-replica-set-configuration-document
# required parameters are: _id (str), members (array of members), host (str)
# allowed parameters are: priority (int), votes (int)
# the first member of replica is not allowed to have extra parameters

class Node:
    """
    Single replica set member reached through a direct connection.
    The label is stable within one run: primary, secondary1, secondary2 ...
    """
    def __init__(self, host, label, role, client):
        self.host = host
        self.label = label
        self.role = role
        self.client = client

    @property
    def is_primary(self):
        return self.role == "primary"

    def __repr__(self):
        return f"Node({self.label}={self.host}, {self.role})"


class Cluster:
    def __init__(self, config, **kwargs):
        self.config = config
        self.mongod_extra_args = kwargs.get('mongod_extra_args', "")
        self.mongod_datadir = kwargs.get('mongod_datadir', "/data/db")
        self.mongo_image = kwargs.get('mongo_image', os.environ.get("MONGO_IMAGE", "mongodb/local"))
        self.network = kwargs.get('network', "test")
        self.election_timeout = kwargs.get('election_timeout', 60)
        self.replication_timeout = kwargs.get('replication_timeout', 60)
        self._clients = {}
        self._shut_down = False

    @property
    def config(self):
        return self._config

    @property
    def mongod_extra_args(self):
        return self._mongod_extra_args

    @mongod_extra_args.setter
    def mongod_extra_args(self, value):
        assert isinstance(value, str)
        self._mongod_extra_args = value

    @property
    def mongod_datadir(self):
        return self._mongod_datadir

    @mongod_datadir.setter
    def mongod_datadir(self, value):
        assert isinstance(value, str)
        self._mongod_datadir = value

    # config validator
    @config.setter
    def config(self, value):
        assert isinstance(value, dict)
        assert set(value.keys()) == {'_id', 'members'}
        assert isinstance(value['_id'], str) and isinstance(value['members'], list)
        assert len(value['members']) % 2 == 1
        hosts = []
        for id, member in enumerate(value['members']):
            assert isinstance(member, dict)
            assert set(member.keys()) <= {'host', 'priority', 'votes'}
            assert 'host' in member and isinstance(member['host'], str)
            if id == 0:
                assert set(member.keys()) == {'host'}
            if 'priority' in member:
                assert isinstance(member['priority'], int)
            if 'votes' in member:
                assert isinstance(member['votes'], int)
                assert member['votes'] in [0,1]
                if member['votes'] == 0:
                    assert member.get('priority') == 0
            assert member['host'] not in hosts
            hosts.append(member['host'])
        self._config = value

    @staticmethod
    def replicaset_config(node_count, name="rs1"):
        return {"_id": name, "members": [{"host": f"{name}{i:02d}"} for i in range(1, node_count + 1)]}

    # starts a replicaset with node_count members and returns the handle,
    # containers are removed if the replicaset can't be brought up
    @classmethod
    def bootstrap(cls, node_count, name="rs1", **kwargs):
        cluster = cls(cls.replicaset_config(node_count, name), **kwargs)
        try:
            cluster.destroy()
            cluster.create()
        except Exception:
            cluster.shutdown()
            raise
        return cluster

    # returns mongodb connection string to the replicaset
    @property
    def connection(self):
        hosts = ",".join(f"{member['host']}:27017" for member in self.config["members"])
        return (f"mongodb://root:root@{hosts}/"f"?replicaSet={self.config['_id']}")

    @staticmethod
    def node_connection(host):
        return f"mongodb://root:root@{host}:27017/?directConnection=true&readPreference=secondaryPreferred"

    @property
    def mongod_hosts(self):
        return [member['host'] for member in self.config['members']]

    @property
    def entrypoint(self):
        return self.config['members'][0]['host']

    @staticmethod
    def calculate_mem_limits(config):
        total_mem = psutil.virtual_memory().total
        mem_pool = int(total_mem * 0.5)
        mem_per_container = mem_pool // len(config['members'])
        # set minimum memory limit for systems with low resources
        min_mem_limit = int(1024 * 1024 * 1024)
        return max(mem_per_container, min_mem_limit)

    def ensure_network(self):
        client = docker.from_env()
        try:
            client.networks.get(self.network)
        except docker.errors.NotFound:
            Cluster.log("Creating docker network " + self.network)
            client.networks.create(self.network, driver="bridge")

    # configures and starts all docker-containers, initiates the replicaset, setups authorization
    def create(self):
        start = time.time()
        self._shut_down = False
        Cluster.log("Creating cluster: " + str(self.config))

        mem_limit = self.calculate_mem_limits(self.config)
        Cluster.log(f"Memory limit per container: {mem_limit // (1024 ** 2)} MB")

        self.ensure_network()
        for host in self.config['members']:
            Cluster.log("Creating container " + host['host'])
            cmd = f"mongod --port 27017 --bind_ip 0.0.0.0 --dbpath {self.mongod_datadir} --replSet {self.config['_id']} --keyFile /etc/keyfile {self.mongod_extra_args}"
            docker.from_env().containers.run(
                image=self.mongo_image,
                name=host['host'],
                hostname=host['host'],
                detach=True,
                network=self.network,
                mem_limit=mem_limit,
                memswap_limit=mem_limit,
                command=cmd
            )
        Cluster.setup_replicaset(self.config)
        Cluster.setup_authorization(self.entrypoint, timeout=self.election_timeout)
        self.wait_for_secondaries()
        Cluster.log("Live nodes: " + json.dumps(self.topology()))
        duration = time.time() - start
        Cluster.log("The cluster was prepared in {} seconds".format(duration))

    # destroys cluster
    def destroy(self):
        for host in self.mongod_hosts:
            try:
                container = docker.from_env().containers.get(host)
                container.remove(v=True,force=True)
                Cluster.log("Container {} was removed".format(host))
            except docker.errors.NotFound:
                pass

    # closes connections and removes containers, safe to call more than once
    def shutdown(self):
        if self._shut_down:
            return
        self._shut_down = True
        for client in self._clients.values():
            client.close()
        self._clients = {}
        self.destroy()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    @staticmethod
    def setup_replicaset(replicaset):
        Cluster.log(f"Setting up replicaset {replicaset.get('_id', 'unknown')}")
        primary = replicaset['members'][0]['host']
        primary = testinfra.get_host("docker://" + primary)
        rs = copy.deepcopy(replicaset)
        for id, data in enumerate(rs['members']):
            rs['members'][id]['_id'] = id
            rs['members'][id]['host'] = rs['members'][id]['host'] + ":27017"
        # the first member is expected to win the initial election
        rs['members'][0]['priority'] = 2
        rs['settings'] = {'electionTimeoutMillis': 2000}
        init_rs = ('\'config =' +
                   json.dumps(rs) +
                   ';rs.initiate(config);\'')
        max_iterations = 10
        wait_time = 0.5
        for i in range(max_iterations):
            result = primary.run("mongosh --quiet --eval " + init_rs)
            if result.rc == 0 or (result.rc != 0 and 'already initialized' in result.stderr.lower()):
                break
            time.sleep(wait_time)
        Cluster.log("Setup replicaset " + json.dumps(rs) + ":\n" + result.stdout.strip())

    @staticmethod
    def setup_authorization(host, timeout=60):
        primary = testinfra.get_host("docker://" + host)
        Cluster.wait_for_primary(host, "mongodb://127.0.0.1:27017", timeout=timeout)
        Cluster.log("Setup authorization on " + host)
        Cluster.log("Adding root user on " + host)
        init_root_user = '\'db.getSiblingDB("admin").createUser({ user: "root", pwd: "root", roles: [ "root", "userAdminAnyDatabase", "clusterAdmin" ] });\''
        primary.check_output("mongosh --quiet --eval " + init_root_user)

    @staticmethod
    def wait_for_primary(host, connection, timeout=60):
        n = testinfra.get_host("docker://" + host)
        deadline = time.time() + timeout
        Cluster.log("Checking ismaster() on host " + host)
        while True:
            result = n.run(
                "mongosh " + connection + " --quiet --eval 'db.hello().isWritablePrimary'")
            if 'true' in result.stdout.lower():
                Cluster.log("Host " + host + " became primary")
                return True
            elif 'mongoservererror' in result.stderr.lower():
                raise ElectionError(f"{host}: {result.stderr.strip()}")
            else:
                Cluster.log("Waiting for " + host + " to became primary")
            if time.time() >= deadline:
                raise BootstrapTimeoutError(f"No primary was elected on {host} within {timeout} seconds")
            time.sleep(0.5)

    # waits until every non-primary member reports SECONDARY state
    def wait_for_secondaries(self):
        deadline = time.time() + self.election_timeout
        pending = [host for host in self.mongod_hosts if host != self.entrypoint]
        while pending:
            for host in list(pending):
                try:
                    if self.hello(host).get("secondary"):
                        Cluster.log("Host " + host + " became secondary")
                        pending.remove(host)
                except pymongo.errors.PyMongoError as e:
                    Cluster.log(f"Waiting for {host} to become secondary: {e}")
            if not pending:
                break
            if time.time() >= deadline:
                raise BootstrapTimeoutError(f"Members {pending} did not become secondary within {self.election_timeout} seconds")
            time.sleep(0.5)

    def client(self, host):
        if host not in self._clients:
            self._clients[host] = pymongo.MongoClient(Cluster.node_connection(host), serverSelectionTimeoutMS=5000)
        return self._clients[host]

    def hello(self, host):
        return self.client(host).admin.command("hello")

    # returns all members as Node objects, primary first, secondaries in config order,
    # every configured member must be primary or secondary
    def nodes(self):
        primary = None
        secondaries = []
        for host in self.mongod_hosts:
            hello = self.hello(host)
            if hello.get("isWritablePrimary"):
                if primary is not None:
                    raise ElectionError(f"Both {primary.host} and {host} report themselves as primary")
                primary = Node(host, "primary", "primary", self.client(host))
            elif hello.get("secondary"):
                secondaries.append(Node(host, f"secondary{len(secondaries) + 1}", "secondary", self.client(host)))
            else:
                raise ElectionError(f"Host {host} is neither primary nor secondary, every member must be up")
        if primary is None:
            raise ElectionError("Primary node is not found in RS " + self.config['_id'])
        return [primary] + secondaries

    def primary(self):
        return self.nodes()[0]

    def secondaries(self):
        return self.nodes()[1:]

    def topology(self):
        nodes = self.nodes()
        return {"primary": nodes[0].host, "secondaries": [node.host for node in nodes[1:]]}

    @staticmethod
    def last_write(client):
        return client.admin.command("hello")["lastWrite"]["opTime"]["ts"]

    # blocks until every secondary has applied the primary's last write at the moment of the call
    def await_replication(self, timeout=None):
        timeout = self.replication_timeout if timeout is None else timeout
        nodes = self.nodes()
        target = Cluster.last_write(nodes[0].client)
        deadline = time.time() + timeout
        for node in nodes[1:]:
            while True:
                try:
                    applied = Cluster.last_write(node.client)
                    if applied >= target:
                        break
                    Cluster.log(f"Waiting for {node.host} to reach {target}, applied {applied}")
                except pymongo.errors.ConnectionFailure as e:
                    Cluster.log(f"Waiting for {node.host} to reach {target}: {e}")
                if time.time() >= deadline:
                    raise ReplicationTimeoutError(f"{node.host} did not replicate up to {target} within {timeout} seconds")
                time.sleep(0.5)
        Cluster.log(f"Replication caught up to {target} on {len(nodes) - 1} secondaries")

    @staticmethod
    def log(*args, **kwargs):
        print("[%s]" % (datetime.now()).strftime('%Y-%m-%dT%H:%M:%S'),*args, **kwargs)
