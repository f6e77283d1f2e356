"""
Shared fakes for the controller tests.

FakeCluster interprets the administrative statements the controller issues
against an in-memory model of roles, databases and sessions. FakeCoreV1Api keeps
Secrets with resourceVersions so tests can observe API writes.
"""

import os
import re
import sys
import copy
from contextlib import contextmanager

import psycopg2
import psycopg2.errors
import pytest
from kubernetes.client.rest import ApiException
from psycopg2 import sql

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

_IDENT = re.compile(r'"((?:[^"]|"")*)"')


def _idents(text):
    return [m.replace('""', '"') for m in _IDENT.findall(text)]


class FakeCluster:
    """In-memory stand-in for the parts of a Postgres server the administrator touches"""

    def __init__(self):
        self.roles = {}
        self.databases = {}
        self.sessions = []
        self.executed = []
        self.fail_on = {}

    def open_session(self, database, user):
        self.sessions.append((len(self.sessions) + 1000, database, user))

    def statements(self):
        return [text for text, _ in self.executed]

    def execute(self, text, params):
        self.executed.append((text, params))
        for prefix, error in self.fail_on.items():
            if text.startswith(prefix):
                raise error

        names = _idents(text)
        if text.startswith("SELECT 1 FROM pg_roles"):
            return [(1,)] if params[0] in self.roles else []
        if text.startswith("SELECT 1 FROM pg_database"):
            return [(1,)] if params[0] in self.databases else []
        if text.startswith("SELECT pg_terminate_backend"):
            column = 1 if "datname" in text else 2
            killed = [s for s in self.sessions if s[column] == params[0]]
            self.sessions = [s for s in self.sessions if s[column] != params[0]]
            return [(True,) for _ in killed]
        if text.startswith("CREATE ROLE"):
            if names[0] in self.roles:
                raise psycopg2.errors.DuplicateObject(f'role "{names[0]}" already exists')
            self.roles[names[0]] = {"password": params[0], "login": True}
        elif text.startswith("CREATE DATABASE"):
            if names[0] in self.databases:
                raise psycopg2.errors.DuplicateDatabase(f'database "{names[0]}" already exists')
            self.databases[names[0]] = names[1]
        elif text.startswith("ALTER ROLE") and "PASSWORD" in text:
            if names[0] not in self.roles:
                raise psycopg2.errors.UndefinedObject(f'role "{names[0]}" does not exist')
            self.roles[names[0]]["password"] = params[0]
        elif text.startswith("ALTER ROLE") and "NOLOGIN" in text:
            self.roles[names[0]]["login"] = False
        elif text.startswith("DROP DATABASE"):
            if any(s[1] == names[0] for s in self.sessions):
                raise psycopg2.errors.ObjectInUse(
                    f'database "{names[0]}" is being accessed by other users')
            self.databases.pop(names[0], None)
        elif text.startswith("DROP ROLE"):
            if names[0] in self.databases.values():
                raise psycopg2.errors.DependentObjectsStillExist(
                    f'role "{names[0]}" cannot be dropped because some objects depend on it')
            self.roles.pop(names[0], None)
        return []


class FakeCursor:
    def __init__(self, cluster):
        self.cluster = cluster
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, stmt, params=None):
        text = stmt.as_string(None) if isinstance(stmt, sql.Composable) else stmt
        self._rows = list(self.cluster.execute(text, params))

    def fetchone(self):
        return self._rows[0] if self._rows else None


class FakeConnection:
    def __init__(self, cluster):
        self.cluster = cluster
        self.closed = 0
        self.autocommit = False

    def cursor(self):
        return FakeCursor(self.cluster)


class FakePool:
    def __init__(self, cluster):
        self.cluster = cluster
        self.timeouts = []

    @contextmanager
    def connection(self, timeout=None):
        self.timeouts.append(timeout)
        yield FakeConnection(self.cluster)


class FakeFactory:
    def __init__(self, cluster):
        self._pool = FakePool(cluster)

    def pool(self):
        return self._pool


class FakeCoreV1Api:
    """Secret subset of CoreV1Api with resourceVersion bookkeeping"""

    def __init__(self):
        self.secrets = {}
        self.writes = 0
        self.reads = 0
        self._version = 0
        self.replace_errors = []

    def _bump(self):
        self._version += 1
        return str(self._version)

    def read_namespaced_secret(self, name, namespace):
        self.reads += 1
        key = (namespace, name)
        if key not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.secrets[key])

    def create_namespaced_secret(self, namespace, body):
        key = (namespace, body.metadata.name)
        if key in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        stored = copy.deepcopy(body)
        stored.metadata.resource_version = self._bump()
        self.secrets[key] = stored
        self.writes += 1
        return copy.deepcopy(stored)

    def replace_namespaced_secret(self, name, namespace, body):
        if self.replace_errors:
            raise self.replace_errors.pop(0)
        key = (namespace, name)
        current = self.secrets[key]
        if body.metadata.resource_version != current.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        if body.type != current.type:
            raise ApiException(status=422, reason="Invalid: field is immutable")
        stored = copy.deepcopy(body)
        stored.metadata.resource_version = self._bump()
        self.secrets[key] = stored
        self.writes += 1
        return copy.deepcopy(stored)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def factory(cluster):
    return FakeFactory(cluster)


@pytest.fixture
def core_v1():
    return FakeCoreV1Api()


@pytest.fixture
def tenant_body():
    return {
        "apiVersion": "db.tenancy.io/v1alpha1",
        "kind": "Tenant",
        "metadata": {"name": "acme", "namespace": "tenants", "uid": "7f3c-uid"},
        "spec": {"databaseName": "tenant1", "userName": "app1"},
    }
