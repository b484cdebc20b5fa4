"""Pytest fixtures: an in-memory Firestore double injected as `db`."""

import copy
import uuid

import pytest
from firebase_admin import firestore
from google.api_core.exceptions import NotFound

from app import create_app
from family_tree_manager import create_family_tree, create_personal_tree


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data)


def _apply_update(current, data):
    for key, value in data.items():
        if isinstance(value, firestore.ArrayUnion):
            existing = list(current.get(key) or [])
            for item in value.values:
                if item not in existing:
                    existing.append(copy.deepcopy(item))
            current[key] = existing
        elif isinstance(value, firestore.ArrayRemove):
            current[key] = [item for item in current.get(key) or [] if item not in value.values]
        else:
            current[key] = copy.deepcopy(value)


class FakeDocumentReference:
    def __init__(self, db, collection_name, doc_id):
        self._db = db
        self._collection_name = collection_name
        self.id = doc_id

    @property
    def _docs(self):
        return self._db.data.setdefault(self._collection_name, {})

    def get(self, transaction=None):
        return FakeSnapshot(self, copy.deepcopy(self._docs.get(self.id)))

    def set(self, data, merge=False):
        if merge and self.id in self._docs:
            _apply_update(self._docs[self.id], data)
        else:
            self._docs[self.id] = {}
            _apply_update(self._docs[self.id], data)

    def update(self, data):
        if self.id not in self._docs:
            raise NotFound(f"No document to update: {self._collection_name}/{self.id}")
        _apply_update(self._docs[self.id], data)

    def delete(self):
        self._docs.pop(self.id, None)


class FakeQuery:
    def __init__(self, db, collection_name, filters=(), limit=None):
        self._db = db
        self._collection_name = collection_name
        self._filters = filters
        self._limit = limit

    def where(self, field_path=None, op_string=None, value=None, *, filter=None):
        if filter is not None:
            field_path, op_string, value = filter.field_path, filter.op_string, filter.value
        return FakeQuery(self._db, self._collection_name, self._filters + ((field_path, op_string, value),), self._limit)

    def limit(self, count):
        return FakeQuery(self._db, self._collection_name, self._filters, count)

    @staticmethod
    def _matches(data, field_path, op_string, value):
        if field_path not in data:
            return False
        if op_string == '==':
            return data[field_path] == value
        if op_string == 'array_contains':
            return isinstance(data[field_path], list) and value in data[field_path]
        raise NotImplementedError(f"Operator {op_string} is not supported by the fake")

    def stream(self):
        results = []
        for doc_id, data in list(self._db.data.get(self._collection_name, {}).items()):
            if all(self._matches(data, *f) for f in self._filters):
                ref = FakeDocumentReference(self._db, self._collection_name, doc_id)
                results.append(FakeSnapshot(ref, copy.deepcopy(data)))
                if self._limit is not None and len(results) >= self._limit:
                    break
        return iter(results)

    def get(self):
        return list(self.stream())


class FakeCollection(FakeQuery):
    def __init__(self, db, name):
        super().__init__(db, name)
        self.id = name

    def document(self, doc_id=None):
        return FakeDocumentReference(self._db, self._collection_name, doc_id or uuid.uuid4().hex[:20])

    def add(self, data, document_id=None):
        ref = self.document(document_id)
        ref.set(data)
        return None, ref


class FakeBatch:
    def __init__(self):
        self._operations = []

    def set(self, ref, data, merge=False):
        self._operations.append(lambda: ref.set(data, merge=merge))

    def update(self, ref, data):
        self._operations.append(lambda: ref.update(data))

    def delete(self, ref):
        self._operations.append(ref.delete)

    def commit(self):
        for operation in self._operations:
            operation()
        self._operations = []


class FakeFirestore:
    def __init__(self):
        self.data = {}

    def collection(self, name):
        return FakeCollection(self, name)

    def batch(self):
        return FakeBatch()


@pytest.fixture
def db():
    """Empty in-memory Firestore."""
    return FakeFirestore()


@pytest.fixture
def personal_tree(db):
    """Personal tree of user 'alice' containing only her own person."""
    return create_personal_tree(db, 'alice', {
        'firstName': 'Alice',
        'lastName': 'Smith',
        'birthDate': '1990-04-01',
        'gender': 'female'
    })


@pytest.fixture
def group_tree(db):
    """Empty tree owned by a family group."""
    return create_family_tree(db, 'group-owner', 'Smith Family Group')


@pytest.fixture
def client(db):
    """Flask test client wired to the in-memory Firestore."""
    app = create_app(db=db)
    app.config['TESTING'] = True
    return app.test_client()
