#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
mongodb_exporter.py - Prometheus exporter for MongoDB.

Runs MongoDB diagnostic commands on every scrape (ping, serverStatus,
replSetGetStatus, getDiagnosticData, $collStats, $indexStats) and flattens
the returned documents into Prometheus samples.

Naming modes:
    hierarchical  metric names are derived from the document path only
    compatible    hierarchical names, plus the legacy names and the extra
                  metrics (locks, cache evictions, sharding stats, ...)
                  published by the previous exporter generation
"""

import argparse
import json
import logging
import re
import sys
import time
from collections import namedtuple
from datetime import datetime, timezone
from enum import Enum

try:
    import pymongo
    from bson.decimal128 import Decimal128
    from bson.errors import BSONError
    from bson.timestamp import Timestamp
    from pymongo import MongoClient
    from pymongo.read_preferences import ReadPreference
    from pymongo.errors import OperationFailure, PyMongoError
except ImportError:
    print("pymongo is not installed. Install it with: pip install 'pymongo>=4.2,<5.0'")
    sys.exit(1)

from prometheus_client import CollectorRegistry, start_http_server
from prometheus_client.core import Metric


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

__version__ = "26.10.19"

log = logging.getLogger("mongodb_exporter")

DEFAULT_LISTEN_ADDRESS = ":9216"
DEFAULT_TIMEOUT = 10

# replSetGetStatus errors returned by nodes that are not replica set members
REPLICATION_NOT_ENABLED = 76
REPLICATION_NOT_YET_INITIALIZED = 94

# returned by servers that predate the command
COMMAND_NOT_FOUND = 59

LOCK_MEASURES = ("acquireCount", "acquireWaitCount", "timeAcquiringMicros", "deadlockCount")

CACHE_EVICTED_PATHS = (
    ("wiredTiger", "cache", "modified pages evicted"),
    ("wiredTiger", "cache", "unmodified pages evicted"),
)

COLLSTATS_PIPELINE = [
    {"$collStats": {"latencyStats": {"histograms": True}, "storageStats": {"scale": 1}}},
    {"$project": {"storageStats.wiredTiger": 0, "storageStats.indexDetails": 0}},
]

INDEXSTATS_PIPELINE = [{"$indexStats": {}}]


class NamingMode(Enum):
    COMPATIBLE = "compatible"
    HIERARCHICAL = "hierarchical"


class SampleKind(Enum):
    """Prometheus metric family type of a sample."""

    GAUGE = "gauge"
    UNTYPED = "unknown"


MetricSample = namedtuple("MetricSample", ["name", "kind", "labels", "value"])


def make_samples(pairs, labels, kind=SampleKind.UNTYPED):
    """Turn (name, value) pairs into samples, each with its own copy of labels."""
    return [MetricSample(name, kind, dict(labels), value) for name, value in pairs]


def debug_result(title, result):
    """Dump a raw command result when debug logging is enabled."""
    if log.isEnabledFor(logging.DEBUG):
        log.debug("%s\n%s", title, json.dumps(result, indent=2, default=str))


# ---------------------------------------------------------------------------
# ValueCoercer — classifies document values and converts them to floats
# ---------------------------------------------------------------------------

class ValueKind(Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    TIMESTAMP = "timestamp"
    DOCUMENT = "document"
    ARRAY = "array"
    OTHER = "other"


def classify(value):
    """Return the ValueKind of a decoded BSON value."""
    if value is None:
        return ValueKind.NULL
    # bool is a subclass of int, test it first
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, int):
        return ValueKind.INT
    if isinstance(value, (float, Decimal128)):
        return ValueKind.FLOAT
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (Timestamp, datetime)):
        return ValueKind.TIMESTAMP
    if isinstance(value, dict):
        return ValueKind.DOCUMENT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.OTHER


def timestamp_seconds(value):
    """Seconds since the epoch for a BSON Timestamp or a datetime."""
    if isinstance(value, Timestamp):
        return float(value.time)
    if value.tzinfo is None:
        # pymongo decodes dates as naive UTC datetimes
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def coerce(value, temporal=False):
    """Convert a leaf value to a float, or return None when it is not a number.

    Timestamps are only converted when ``temporal`` is set; the generic
    flattening path never asks for it.
    """
    kind = classify(value)
    if kind is ValueKind.BOOL:
        return 1.0 if value else 0.0
    if kind is ValueKind.INT:
        return float(value)
    if kind is ValueKind.FLOAT:
        if isinstance(value, Decimal128):
            number = value.to_decimal()
            # float() refuses signaling NaN
            if number.is_snan():
                return None
            return float(number)
        return float(value)
    if kind is ValueKind.TIMESTAMP and temporal:
        return timestamp_seconds(value)
    return None


def walk_to(doc, path):
    """Follow a key path through nested documents, None if any step is missing."""
    value = doc
    for key in path:
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


# ---------------------------------------------------------------------------
# NameBuilder — metric names and the legacy rename table
# ---------------------------------------------------------------------------

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")


def sanitize(name):
    """Make ``name`` a valid Prometheus metric name. Idempotent."""
    name = _INVALID_NAME_CHARS.sub("_", name)
    if not name or name[0].isdigit():
        name = "_" + name
    return name


def build_name(prefix, path):
    """Join prefix and path segments with underscores, lower-case and sanitize."""
    parts = [prefix] if prefix else []
    parts.extend(str(segment) for segment in path)
    return sanitize("_".join(parts).lower())


# Legacy names of server status fields. The same field is reachable from the
# serverStatus collector (mongodb_ss_*) and from the serverStatus section of
# getDiagnosticData (mongodb_serverstatus_*).
_LEGACY_SERVER_STATUS_NAMES = {
    "uptime": "mongodb_instance_uptime_seconds",
    "connections_totalcreated": "mongodb_connections_metrics_created_total",
    "extra_info_page_faults": "mongodb_extra_info_page_faults_total",
    "network_numrequests": "mongodb_network_metrics_num_requests_total",
    "network_bytesin": "mongodb_network_bytes_in_total",
    "network_bytesout": "mongodb_network_bytes_out_total",
}


def _default_renames():
    renames = {}
    for path, legacy in _LEGACY_SERVER_STATUS_NAMES.items():
        renames[f"mongodb_ss_{path}"] = legacy
        renames[f"mongodb_serverstatus_{path}"] = legacy
    renames["mongodb_rs_mystate"] = "mongodb_mongod_replset_my_state"
    return renames


class RenameTable:
    """Hierarchical metric name -> legacy metric name, used in compatible mode.

    Seeded with the legacy names known to be used by existing dashboards.
    Extra entries can be supplied as a JSON object:
        {"mongodb_ss_asserts_regular": "mongodb_asserts_regular_total", ...}
    """

    def __init__(self, renames=None):
        self.renames = _default_renames()
        if renames:
            self.renames.update(renames)

    @classmethod
    def from_json(cls, json_str):
        """Parse a JSON string into a RenameTable extending the defaults."""
        if not json_str:
            return cls()
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON for --compatible-renames: {e}")
        if not isinstance(data, dict):
            raise ValueError("--compatible-renames must be a JSON object")
        for name, legacy in data.items():
            if not isinstance(legacy, str) or not _METRIC_NAME.match(legacy):
                raise ValueError(f"Invalid legacy metric name for {name!r}: {legacy!r}")
        return cls(data)

    def lookup(self, name):
        return self.renames.get(name)

    def __contains__(self, name):
        return name in self.renames

    def __len__(self):
        return len(self.renames)


DEFAULT_RENAME_TABLE = RenameTable()


# ---------------------------------------------------------------------------
# DocumentFlattener
# ---------------------------------------------------------------------------

def _walk(value, path, prefix, out):
    kind = classify(value)
    if kind is ValueKind.DOCUMENT:
        for key, item in value.items():
            _walk(item, path + [key], prefix, out)
    elif kind is ValueKind.ARRAY:
        # Only structured arrays (e.g. per-shard stats) are exposed, arrays
        # of scalars have no stable meaning per index.
        for index, item in enumerate(value):
            if classify(item) in (ValueKind.DOCUMENT, ValueKind.ARRAY):
                _walk(item, path + [index], prefix, out)
    else:
        number = coerce(value)
        if number is not None:
            out[build_name(prefix, path)] = number


def flatten(doc, prefix="", mode=NamingMode.HIERARCHICAL, renames=None):
    """Flatten a document into a list of (metric name, value) pairs.

    Keys are walked in document order. Keys that only differ by characters
    removed by sanitization end up with the same name; the last one wins.
    In compatible mode, every name found in the rename table is also
    published under its legacy name.
    """
    metrics = {}
    _walk(doc, [], prefix, metrics)

    if mode is NamingMode.COMPATIBLE:
        table = renames if renames is not None else DEFAULT_RENAME_TABLE
        for name, value in list(metrics.items()):
            legacy = table.lookup(name)
            if legacy:
                metrics.setdefault(legacy, value)

    return list(metrics.items())


# ---------------------------------------------------------------------------
# NodeRole — classifies the monitored node (router / replica member / standalone)
# ---------------------------------------------------------------------------

def hello_command(client):
    """Run 'hello', falling back to 'isMaster' on servers that lack it."""
    try:
        return client.admin.command("hello", read_preference=ReadPreference.PRIMARY_PREFERRED)
    except OperationFailure as e:
        if e.code != COMMAND_NOT_FOUND:
            raise
        return client.admin.command("isMaster", read_preference=ReadPreference.PRIMARY_PREFERRED)


class NodeRole:
    """Detects the role of the node the client is connected to."""

    ROUTER = "router"
    REPLICA_MEMBER = "replica_member"
    STANDALONE = "standalone"

    @staticmethod
    def from_hello(hello):
        # mongos answers with msg: "isdbgrid"
        if hello.get("msg") == "isdbgrid":
            return NodeRole.ROUTER
        if hello.get("setName"):
            return NodeRole.REPLICA_MEMBER
        return NodeRole.STANDALONE

    @staticmethod
    def detect(client):
        """Returns (role, hello reply). Raises PyMongoError on failure."""
        hello = hello_command(client)
        return NodeRole.from_hello(hello), hello


# ---------------------------------------------------------------------------
# Label sources
# ---------------------------------------------------------------------------

class StaticLabels:
    """Label source returning a fixed label set."""

    def __init__(self, labels=None):
        self._labels = dict(labels or {})

    def base_labels(self):
        return dict(self._labels)


class TopologyLabels:
    """Identity labels of the monitored node.

    Resolved with 'hello' on first use and kept once resolved; while the node
    is unreachable the label set is empty.
    """

    def __init__(self, client):
        self.client = client
        self._labels = None

    def _resolve(self):
        try:
            hello = hello_command(self.client)
        except PyMongoError as e:
            log.warning("cannot get node topology labels: %s", e)
            return None

        role = NodeRole.from_hello(hello)
        labels = {}
        if role == NodeRole.ROUTER:
            labels["cl_role"] = "mongos"
        elif hello.get("configsvr"):
            labels["cl_role"] = "configsvr"
        elif role == NodeRole.REPLICA_MEMBER:
            labels["cl_role"] = "replset"
        else:
            labels["cl_role"] = "standalone"
        if hello.get("setName"):
            labels["rs_nm"] = hello["setName"]
        return labels

    def base_labels(self):
        if self._labels is None:
            self._labels = self._resolve()
        return dict(self._labels or {})


# ---------------------------------------------------------------------------
# SpecialCaseRewriters
# ---------------------------------------------------------------------------

_UNSET = object()


class ScrapeContext:
    """What the rewriters may use during one scrape."""

    def __init__(self, client, mode, labels):
        self.client = client
        self.mode = mode
        self.labels = labels
        self._role = _UNSET

    def node_role(self):
        """Node role, detected at most once per scrape. None when detection failed."""
        if self._role is _UNSET:
            try:
                self._role, _ = NodeRole.detect(self.client)
            except PyMongoError as e:
                log.error("cannot get node type to check if this is a mongos: %s", e)
                self._role = None
        return self._role

    def sample(self, name, value, kind=SampleKind.GAUGE, **extra_labels):
        labels = dict(self.labels)
        labels.update(extra_labels)
        return MetricSample(name, kind, labels, value)


class Rewriter:
    """A pass over the raw server status section producing extra samples.

    All rewriters belong to the compatible naming scheme.
    """

    def applies(self, context):
        return context.mode is NamingMode.COMPATIBLE

    def rewrite(self, status, context):
        raise NotImplementedError


class LocksRewriter(Rewriter):
    """Lock counters with lock type and mode as labels instead of name segments."""

    def rewrite(self, status, context):
        locks = status.get("locks")
        if not isinstance(locks, dict):
            return []

        samples = []
        for lock_type, measures in locks.items():
            if not isinstance(measures, dict):
                continue
            for measure in LOCK_MEASURES:
                modes = measures.get(measure)
                if not isinstance(modes, dict):
                    continue
                name = build_name("mongodb_ss_locks", [measure])
                for lock_mode, value in modes.items():
                    number = coerce(value)
                    if number is None:
                        continue
                    samples.append(context.sample(
                        name, number, SampleKind.UNTYPED,
                        lock_type=lock_type, lock_mode=lock_mode,
                    ))
        return samples


class CacheEvictedRewriter(Rewriter):
    """Legacy total of evicted WiredTiger cache pages."""

    def rewrite(self, status, context):
        total = 0.0
        for path in CACHE_EVICTED_PATHS:
            value = coerce(walk_to(status, path))
            if value is None:
                return []
            total += value
        return [context.sample("mongodb_mongod_wiredtiger_cache_evicted_total", total)]


class CompatExtrasRewriter(Rewriter):
    """Version, storage engine and oplog window metrics of the legacy exporter."""

    def rewrite(self, status, context):
        samples = []

        version = status.get("version")
        if isinstance(version, str):
            samples.append(context.sample("mongodb_version_info", 1.0, version=version))

        engine = walk_to(status, ("storageEngine", "name"))
        if isinstance(engine, str):
            samples.append(context.sample("mongodb_mongod_storage_engine", 1.0, engine=engine))

        samples.extend(self._oplog_timestamps(context))
        return samples

    def _oplog_timestamps(self, context):
        oplog = context.client["local"]["oplog.rs"]
        try:
            first = list(oplog.find().sort("$natural", pymongo.ASCENDING).limit(1))
            last = list(oplog.find().sort("$natural", pymongo.DESCENDING).limit(1))
        except PyMongoError as e:
            # Standalone nodes and mongos have no oplog
            log.debug("cannot read oplog.rs: %s", e)
            return []

        samples = []
        for name, entries in (
            ("mongodb_mongod_replset_oplog_tail_timestamp", first),
            ("mongodb_mongod_replset_oplog_head_timestamp", last),
        ):
            if not entries:
                continue
            value = coerce(entries[0].get("ts"), temporal=True)
            if value is not None:
                samples.append(context.sample(name, value))
        return samples


class RouterStatsRewriter(Rewriter):
    """Sharding statistics, only available on mongos."""

    def applies(self, context):
        return super().applies(context) and context.node_role() == NodeRole.ROUTER

    def rewrite(self, status, context):
        config = context.client["config"]
        samples = []

        for db_type, partitioned in (("partitioned", True), ("unpartitioned", False)):
            try:
                count = config["databases"].count_documents({"partitioned": partitioned})
            except PyMongoError as e:
                log.error("cannot count %s databases: %s", db_type, e)
                continue
            samples.append(context.sample(
                "mongodb_mongos_sharding_databases_total", float(count), type=db_type,
            ))

        try:
            count = config["collections"].count_documents({})
            samples.append(context.sample("mongodb_mongos_sharding_collections_total", float(count)))
        except PyMongoError as e:
            log.error("cannot count sharded collections: %s", e)

        try:
            settings = config["settings"].find_one({"_id": "balancer"})
            # no settings document means the balancer was never stopped
            enabled = not (settings or {}).get("stopped", False)
            samples.append(context.sample(
                "mongodb_mongos_sharding_balancer_enabled", 1.0 if enabled else 0.0,
            ))
        except PyMongoError as e:
            log.error("cannot get balancer settings: %s", e)

        try:
            count = config["chunks"].count_documents({})
            samples.append(context.sample("mongodb_mongos_sharding_chunks_total", float(count)))
        except PyMongoError as e:
            log.error("cannot count chunks: %s", e)

        try:
            per_shard = list(config["chunks"].aggregate([
                {"$group": {"_id": "$shard", "count": {"$sum": 1}}},
            ]))
        except PyMongoError as e:
            log.error("cannot count chunks per shard: %s", e)
            per_shard = []
        for row in per_shard:
            count = coerce(row.get("count"))
            if count is None or not isinstance(row.get("_id"), str):
                continue
            samples.append(context.sample(
                "mongodb_mongos_sharding_shard_chunks_total", count, shard=row["_id"],
            ))

        return samples


REWRITERS = (
    LocksRewriter(),
    CacheEvictedRewriter(),
    CompatExtrasRewriter(),
    RouterStatsRewriter(),
)


def run_rewriters(status, context, rewriters=REWRITERS):
    """Run every applicable rewriter over the server status section."""
    samples = []
    for rewriter in rewriters:
        if rewriter.applies(context):
            samples.extend(rewriter.rewrite(status, context))
    return samples


# ---------------------------------------------------------------------------
# CollectionDiscoverer
# ---------------------------------------------------------------------------

def split_namespace(target):
    """Split 'db.collection' on the first dot. Collection names may contain dots."""
    database, _, collection = target.partition(".")
    return database, collection


def discover(seed, lister):
    """Expand the seed targets to every collection of the databases they name.

    The collection part of the seed entries is ignored. ``lister(database)``
    returns the collection names of a database; a failing database is logged
    and contributes no targets.
    """
    databases = []
    for target in seed:
        database, _ = split_namespace(target)
        if database and database not in databases:
            databases.append(database)

    targets = []
    for database in databases:
        try:
            collections = lister(database)
        except PyMongoError as e:
            log.error("cannot list collections of database %s: %s", database, e)
            continue
        targets.extend(f"{database}.{collection}" for collection in collections)
    return targets


# ---------------------------------------------------------------------------
# Prometheus sink
# ---------------------------------------------------------------------------

def to_metric_families(samples, documentation=""):
    """Group samples by name into prometheus_client metric families."""
    families = {}
    for sample in samples:
        family = families.get(sample.name)
        if family is None:
            family = Metric(sample.name, documentation or sample.name, sample.kind.value)
            families[sample.name] = family
        family.add_sample(sample.name, sample.labels, sample.value)
    return list(families.values())


# ---------------------------------------------------------------------------
# Collectors
# ---------------------------------------------------------------------------

class BaseCollector:
    """prometheus_client custom collector running one scrape per collect().

    A scrape never raises: failures are logged and only reduce the output.
    Every database call of a scrape shares the same deadline.
    """

    documentation = ""

    def __init__(self, client, labels_source, mode=NamingMode.HIERARCHICAL,
                 renames=None, timeout=DEFAULT_TIMEOUT):
        self.client = client
        self.labels_source = labels_source
        self.mode = mode
        self.renames = renames
        self.timeout = timeout

    def describe(self):
        # Registering must not trigger a scrape
        return []

    def collect(self):
        return to_metric_families(self.scrape(), self.documentation)

    def scrape(self):
        """Run one scrape and return the list of MetricSample."""
        try:
            with pymongo.timeout(self.timeout):
                return self._scrape()
        except Exception:
            log.exception("%s scrape failed", type(self).__name__)
            return []

    def _scrape(self):
        raise NotImplementedError

    def _flatten(self, doc, prefix, labels, mode=None):
        pairs = flatten(doc, prefix, mode or self.mode, self.renames)
        return make_samples(pairs, labels)


class GeneralCollector(BaseCollector):
    """mongodb_up: whether the node answers ping."""

    documentation = "Whether MongoDB is up."

    def _scrape(self):
        value = 0.0
        try:
            self.client.admin.command("ping", read_preference=ReadPreference.PRIMARY_PREFERRED)
            value = 1.0
        except PyMongoError as e:
            log.error("error while checking mongodb connection: %s. mongodb_up is set to 0", e)
        return [MetricSample("mongodb_up", SampleKind.GAUGE, self.labels_source.base_labels(), value)]


class ServerStatusCollector(BaseCollector):
    documentation = "serverStatus."

    def _scrape(self):
        try:
            status = self.client.admin.command("serverStatus")
        except PyMongoError as e:
            log.error("cannot run serverStatus: %s", e)
            return []

        debug_result("serverStatus result:", status)

        labels = self.labels_source.base_labels()
        samples = self._flatten(status, "mongodb_ss", labels)
        samples.extend(run_rewriters(status, ScrapeContext(self.client, self.mode, labels)))
        return samples


class DiagnosticDataCollector(BaseCollector):
    documentation = "getDiagnosticData."

    def _scrape(self):
        try:
            result = self.client.admin.command("getDiagnosticData")
        except PyMongoError as e:
            log.error("cannot run getDiagnosticData: %s", e)
            return []

        data = result.get("data")
        if not isinstance(data, dict):
            log.error("cannot decode getDiagnosticData: unexpected %s for data field",
                      type(data).__name__)
            return []

        debug_result("getDiagnosticData result:", data)

        labels = self.labels_source.base_labels()
        samples = self._flatten(data, "mongodb", labels)

        status = data.get("serverStatus")
        if not isinstance(status, dict):
            status = {}
        samples.extend(run_rewriters(status, ScrapeContext(self.client, self.mode, labels)))
        return samples


class ReplSetStatusCollector(BaseCollector):
    documentation = "replSetGetStatus."

    def _scrape(self):
        try:
            status = self.client.admin.command("replSetGetStatus")
        except OperationFailure as e:
            if e.code in (REPLICATION_NOT_ENABLED, REPLICATION_NOT_YET_INITIALIZED):
                log.debug("replSetGetStatus not available: %s", e)
                return []
            log.error("cannot get replSetGetStatus: %s", e)
            return []
        except PyMongoError as e:
            log.error("cannot get replSetGetStatus: %s", e)
            return []

        debug_result("replSetGetStatus result:", status)

        return self._flatten(status, "mongodb_rs", self.labels_source.base_labels())


class PerCollectionCollector(BaseCollector):
    """Runs one aggregation per 'database.collection' target.

    In discovering mode the targets are expanded to all collections of the
    configured databases on every scrape.
    """

    stage = ""

    def __init__(self, client, labels_source, collections, discovering=False, **kwargs):
        super().__init__(client, labels_source, **kwargs)
        self.collections = tuple(collections)
        self.discovering = discovering

    def list_collections(self, database):
        return self.client[database].list_collection_names()

    def targets(self):
        """Target snapshot for one scrape."""
        if self.discovering:
            return discover(self.collections, self.list_collections)
        return list(self.collections)

    def _scrape(self):
        samples = []
        for target in self.targets():
            database, collection = split_namespace(target)
            if not database or not collection:
                log.warning("skipping %r: expected <database>.<collection>", target)
                continue
            try:
                samples.extend(self._scrape_target(database, collection))
            except (PyMongoError, BSONError) as e:
                log.error("cannot get %s for collection %s.%s: %s",
                          self.stage, database, collection, e)
        return samples

    def _scrape_target(self, database, collection):
        raise NotImplementedError


class CollStatsCollector(PerCollectionCollector):
    documentation = "$collStats."
    stage = "$collStats"

    def _scrape_target(self, database, collection):
        stats = list(self.client[database][collection].aggregate(COLLSTATS_PIPELINE))
        debug_result(f"$collStats metrics for {database}.{collection}", stats)

        # All collections have the same fields: the db+collection prefix keeps
        # names distinct, the labels make filtering easier.
        prefix = f"mongodb_{database}_{collection}"
        samples = []
        for doc in stats:
            if not isinstance(doc, dict):
                log.warning("unexpected $collStats result for %s.%s: %r", database, collection, doc)
                continue
            labels = self.labels_source.base_labels()
            labels["database"] = database
            labels["collection"] = collection
            # sharded collections return one document per shard
            if isinstance(doc.get("shard"), str):
                labels["shard"] = doc["shard"]
            samples.extend(self._flatten(doc, prefix, labels))
        return samples


def index_stats_subset(doc):
    """Keep only accesses.ops (always) and building (when present)."""
    ops = coerce(walk_to(doc, ("accesses", "ops")))
    subset = {"accesses": {"ops": ops if ops is not None else 0.0}}
    building = coerce(doc.get("building"))
    if building is not None:
        subset["building"] = building
    return subset


class IndexStatsCollector(PerCollectionCollector):
    documentation = "$indexStats."
    stage = "$indexStats"

    def __init__(self, client, labels_source, collections, discovering=False, **kwargs):
        # index stats have no legacy names
        kwargs["mode"] = NamingMode.HIERARCHICAL
        super().__init__(client, labels_source, collections, discovering, **kwargs)

    def _scrape_target(self, database, collection):
        stats = list(self.client[database][collection].aggregate(INDEXSTATS_PIPELINE))
        debug_result(f"$indexStats for {database}.{collection}", stats)

        samples = []
        for doc in stats:
            index_name = doc.get("name") if isinstance(doc, dict) else None
            if not isinstance(index_name, str):
                log.warning("unexpected $indexStats result for %s.%s: %r", database, collection, doc)
                continue
            labels = self.labels_source.base_labels()
            labels["database"] = database
            labels["collection"] = collection
            labels["namespace"] = f"{database}.{collection}"
            labels["key_name"] = index_name
            if isinstance(doc.get("shard"), str):
                labels["shard"] = doc["shard"]
            prefix = f"mongodb_{database}_{collection}_{index_name}"
            samples.extend(self._flatten(index_stats_subset(doc), prefix, labels))
        return samples


# ---------------------------------------------------------------------------
# MongoConnectionManager — builds the MongoClient
# ---------------------------------------------------------------------------

class MongoConnectionManager:
    """Builds the MongoClient with SRV, LDAP, SCRAM and TLS support."""

    def __init__(self, uri, username=None, password=None, auth_mechanism=None,
                 auth_source=None, tls=False, tls_insecure=False,
                 timeout=DEFAULT_TIMEOUT, direct_connection=True):
        if not uri.startswith("mongodb://") and not uri.startswith("mongodb+srv://"):
            self.uri = f"mongodb://{uri}"
        else:
            self.uri = uri
        self.username = username
        self.password = password
        self.auth_mechanism = auth_mechanism
        self.auth_source = auth_source or "admin"
        self.tls = tls
        self.tls_insecure = tls_insecure
        self.timeout = timeout
        # SRV URIs cannot be combined with directConnection
        self.direct_connection = direct_connection and not self.uri.startswith("mongodb+srv://")

    def _build_client_kwargs(self):
        """Build keyword arguments for MongoClient."""
        kwargs = {
            "appname": "mongodb_exporter",
            "serverSelectionTimeoutMS": self.timeout * 1000,
            "connectTimeoutMS": self.timeout * 1000,
            "socketTimeoutMS": self.timeout * 1000,
        }
        if self.username:
            kwargs["username"] = self.username
        if self.password:
            kwargs["password"] = self.password
        if self.auth_mechanism:
            kwargs["authMechanism"] = self.auth_mechanism
        if self.auth_source:
            kwargs["authSource"] = self.auth_source
        if self.tls:
            kwargs["tls"] = True
            if self.tls_insecure:
                kwargs["tlsAllowInvalidCertificates"] = True
                kwargs["tlsAllowInvalidHostnames"] = True
        if self.direct_connection:
            kwargs["directConnection"] = True
        else:
            kwargs["read_preference"] = ReadPreference.PRIMARY_PREFERRED
        return kwargs

    def connect(self):
        """Create a MongoClient using the configured URI."""
        return MongoClient(self.uri, **self._build_client_kwargs())


# ---------------------------------------------------------------------------
# Argument Parsing
# ---------------------------------------------------------------------------

def parse_targets(value):
    """Comma separated 'db.collection' list."""
    return [t.strip() for t in value.split(",") if t.strip()]


def parse_listen_address(value):
    """'[host]:port' -> (host, port). An empty host listens on all interfaces."""
    host, sep, port = value.rpartition(":")
    if not sep:
        host, port = "", value
    # IPv6 hosts are written in brackets: [::1]:9216
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid listen address: {value!r}")
    return host or "0.0.0.0", port


def parse_arguments(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Prometheus exporter for MongoDB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Expose diagnostic data and replica set status on :9216
  %(prog)s --uri "mongodb://host1:27017/"

  # Legacy metric names, collection stats for every collection of db1
  %(prog)s --uri "mongodb://host1:27017/" --compatible-mode \\
           --discovering-mode --collstats-colls db1.any

  # Using SRV connection string with LDAP auth
  %(prog)s --uri "mongodb+srv://cluster.example.com/" \\
           --username ldapuser --password secret --auth-mechanism PLAIN
        """
    )

    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")

    # Connection
    parser.add_argument("--uri", required=True,
                        help="MongoDB connection string (mongodb:// or mongodb+srv://)")
    parser.add_argument("--username", "-u", default=None,
                        help="Username for authentication")
    parser.add_argument("--password", "-p", default=None,
                        help="Password for authentication")
    parser.add_argument("--auth-mechanism", default=None,
                        choices=["SCRAM-SHA-256", "SCRAM-SHA-1", "PLAIN"],
                        help="Authentication mechanism (default: auto, PLAIN for LDAP)")
    parser.add_argument("--auth-source", default="admin",
                        help="Authentication database (default: admin, use '$external' for LDAP)")
    parser.add_argument("--tls", action="store_true", default=False,
                        help="Enable TLS/SSL connection")
    parser.add_argument("--tls-insecure", action="store_true", default=False,
                        help="Disable TLS certificate verification")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT,
                        help=f"Connection and scrape timeout in seconds (default: {DEFAULT_TIMEOUT})")

    # Exporter
    parser.add_argument("--web.listen-address", dest="listen_address",
                        type=parse_listen_address, default=DEFAULT_LISTEN_ADDRESS,
                        help=f"Address to expose metrics on (default: {DEFAULT_LISTEN_ADDRESS})")
    parser.add_argument("--compatible-mode", action="store_true", default=False,
                        help="Also expose the legacy metric names and metrics")
    parser.add_argument("--compatible-renames", default=None,
                        help='JSON object of extra legacy names, e.g. '
                             '\'{"mongodb_ss_asserts_regular": "mongodb_asserts_regular_total"}\'')
    parser.add_argument("--discovering-mode", action="store_true", default=False,
                        help="Expand collection targets to every collection of their database")
    parser.add_argument("--collstats-colls", type=parse_targets, default=[],
                        help="Comma separated db.collection list for $collStats")
    parser.add_argument("--indexstats-colls", type=parse_targets, default=[],
                        help="Comma separated db.collection list for $indexStats")
    parser.add_argument("--collect.diagnosticdata", dest="collect_diagnosticdata",
                        action=argparse.BooleanOptionalAction, default=True,
                        help="Collect getDiagnosticData metrics")
    parser.add_argument("--collect.replicasetstatus", dest="collect_replicasetstatus",
                        action=argparse.BooleanOptionalAction, default=True,
                        help="Collect replSetGetStatus metrics")
    parser.add_argument("--collect.serverstatus", dest="collect_serverstatus",
                        action=argparse.BooleanOptionalAction, default=False,
                        help="Collect serverStatus metrics (already part of getDiagnosticData)")
    parser.add_argument("--log-level", default="info",
                        choices=["debug", "info", "warning", "error"],
                        help="Logging level (default: info)")

    args = parser.parse_args(argv)

    try:
        args.renames = RenameTable.from_json(args.compatible_renames)
    except ValueError as e:
        parser.error(str(e))

    # Auto-set auth source for LDAP
    if args.auth_mechanism == "PLAIN" and args.auth_source == "admin":
        args.auth_source = "$external"

    return args


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def build_collectors(client, args, labels_source):
    """Instantiate the collectors enabled by the parsed arguments."""
    mode = NamingMode.COMPATIBLE if args.compatible_mode else NamingMode.HIERARCHICAL
    common = {"renames": args.renames, "timeout": args.timeout}

    collectors = [GeneralCollector(client, labels_source, **common)]

    if args.collect_diagnosticdata:
        collectors.append(DiagnosticDataCollector(client, labels_source, mode=mode, **common))
    if args.collect_serverstatus:
        if args.collect_diagnosticdata:
            # both would publish the same rewritten metrics
            log.warning("serverStatus is part of getDiagnosticData, "
                        "skipping the serverStatus collector")
        else:
            collectors.append(ServerStatusCollector(client, labels_source, mode=mode, **common))
    if args.collect_replicasetstatus:
        collectors.append(ReplSetStatusCollector(client, labels_source, mode=mode, **common))
    if args.collstats_colls:
        collectors.append(CollStatsCollector(
            client, labels_source, args.collstats_colls,
            discovering=args.discovering_mode, mode=mode, **common,
        ))
    if args.indexstats_colls:
        collectors.append(IndexStatsCollector(
            client, labels_source, args.indexstats_colls,
            discovering=args.discovering_mode, **common,
        ))
    return collectors


def build_registry(collectors):
    registry = CollectorRegistry()
    for collector in collectors:
        registry.register(collector)
    return registry


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    conn_manager = MongoConnectionManager(
        uri=args.uri,
        username=args.username,
        password=args.password,
        auth_mechanism=args.auth_mechanism,
        auth_source=args.auth_source,
        tls=args.tls,
        tls_insecure=args.tls_insecure,
        timeout=args.timeout,
    )
    client = conn_manager.connect()

    collectors = build_collectors(client, args, TopologyLabels(client))
    registry = build_registry(collectors)

    host, port = args.listen_address
    start_http_server(port, addr=host, registry=registry)
    log.info("mongodb_exporter %s listening on %s:%d", __version__, host, port)

    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        log.info("shutting down")
    finally:
        client.close()


if __name__ == "__main__":
    main()
