from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional
import itertools
import logging

from firebase_admin import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from errors import PreconditionFailedError

logger = logging.getLogger(__name__)

PERSONS_COLLECTION = 'persons'

# Edge type names the related person's role relative to the edge holder
RELATIONSHIP_TYPES = ('parent', 'child', 'spouse')
PERSON_STATUSES = ('living', 'deceased')

# Optional biographical fields, stored as empty strings when absent
OPTIONAL_TEXT_FIELDS = ('middleName', 'birthDate', 'birthPlace', 'gender', 'dateOfDeath', 'placeOfDeath')

# Fields a partial update may never overwrite
IMMUTABLE_FIELDS = ('personId', 'treeId')


def normalize_relationship(relationship: Dict[str, Any]) -> Dict[str, str]:
    """
    Reduce a relationship edge to exactly {relatedPersonId, type}.

    Firestore array transforms compare map values by full equality, so any
    extra key would make an edge impossible to union or remove later.
    """
    if not isinstance(relationship, dict):
        raise PreconditionFailedError(f"Relationship must be an object, got {type(relationship).__name__}")

    related_person_id = relationship.get('relatedPersonId')
    relationship_type = relationship.get('type')

    if not related_person_id:
        raise PreconditionFailedError("Relationship is missing relatedPersonId")
    if relationship_type not in RELATIONSHIP_TYPES:
        raise PreconditionFailedError(
            f"Invalid relationship type '{relationship_type}', expected one of {', '.join(RELATIONSHIP_TYPES)}"
        )

    return {'relatedPersonId': related_person_id, 'type': relationship_type}


def _validate_status(status):
    if status not in PERSON_STATUSES:
        raise PreconditionFailedError(f"Invalid status '{status}', expected 'living' or 'deceased'")


def person_document_defaults(tree_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill in the stored shape of a person without checking names or status.

    Used when copying a person that is already stored, so whatever the
    source holds is carried over as-is.
    """
    person = {
        'treeId': tree_id,
        'groupTreeIds': [],
        'firstName': data.get('firstName') or '',
        'lastName': data.get('lastName') or '',
        'status': data.get('status') or 'living',
    }
    for field_name in OPTIONAL_TEXT_FIELDS:
        person[field_name] = data.get(field_name) or ''

    person['relationships'] = [normalize_relationship(rel) for rel in data.get('relationships') or []]
    return person


def build_person_document(tree_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the stored shape of a person from caller input, applying defaults.

    Args:
        tree_id: Primary tree of the person
        data: Caller supplied fields; firstName and lastName are required

    Returns:
        Dict[str, Any]: Person document without the personId
    """
    if not tree_id:
        raise PreconditionFailedError("treeId is required to create a person")
    if not data.get('firstName') or not data.get('lastName'):
        raise PreconditionFailedError("firstName and lastName are required")

    _validate_status(data.get('status') or 'living')
    return person_document_defaults(tree_id, data)


def _doc_to_person(doc) -> Dict[str, Any]:
    return {'personId': doc.id, **doc.to_dict()}


@dataclass
class PersonPatch:
    """
    Typed form of a partial person update.

    relationships_union is merged into the stored edges, group_tree_ids
    replaces the stored list when set, and attributes overwrite field by field.
    """
    relationships_union: List[Dict[str, str]] = field(default_factory=list)
    group_tree_ids: Optional[List[str]] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_partial(cls, partial: Dict[str, Any]) -> 'PersonPatch':
        attributes = dict(partial or {})

        relationships = attributes.pop('relationships', None)
        if relationships is not None and not isinstance(relationships, list):
            raise PreconditionFailedError("relationships must be a list")

        group_tree_ids = attributes.pop('groupTreeIds', None)
        if group_tree_ids is not None:
            if not isinstance(group_tree_ids, list):
                raise PreconditionFailedError("groupTreeIds must be a list")
            group_tree_ids = list(group_tree_ids)

        for field_name in IMMUTABLE_FIELDS:
            if field_name in attributes:
                logger.debug(f"Ignoring immutable field '{field_name}' in person update")
                attributes.pop(field_name)

        for field_name in ('firstName', 'lastName'):
            if field_name in attributes and not attributes[field_name]:
                raise PreconditionFailedError(f"{field_name} cannot be empty")

        if 'status' in attributes:
            _validate_status(attributes['status'])

        return cls(
            relationships_union=[normalize_relationship(rel) for rel in relationships or []],
            group_tree_ids=group_tree_ids,
            attributes=attributes,
        )


def create_person(db, tree_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a person in a tree with a store generated id.

    Supplied relationships are stored as-is; no reciprocal edges are written.
    """
    person = build_person_document(tree_id, data)
    _, doc_ref = db.collection(PERSONS_COLLECTION).add(person)
    logger.info(f"Created person {doc_ref.id} ({person['firstName']} {person['lastName']}) in tree {tree_id}")
    return {'personId': doc_ref.id, **person}


def create_person_self(db, tree_id: str, uid: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create the tree owner's own person, using the user id as the person id.
    """
    if not uid:
        raise PreconditionFailedError("uid is required to create a self person")

    person = build_person_document(tree_id, data)
    db.collection(PERSONS_COLLECTION).document(uid).set(person)
    logger.info(f"Created self person {uid} in tree {tree_id}")
    return {'personId': uid, **person}


def get_person_by_id(db, person_id: str) -> Optional[Dict[str, Any]]:
    doc = db.collection(PERSONS_COLLECTION).document(person_id).get()
    if not doc.exists:
        return None
    return _doc_to_person(doc)


def get_people_by_tree_id(db, tree_id: str) -> List[Dict[str, Any]]:
    docs = db.collection(PERSONS_COLLECTION).where(filter=FieldFilter('treeId', '==', tree_id)).stream()
    return [_doc_to_person(doc) for doc in docs]


def get_people_by_group_tree_id(db, group_tree_id: str) -> List[Dict[str, Any]]:
    """
    Get everyone visible in a group tree.

    A person is in a group tree either because it lists the tree in its
    groupTreeIds or because it was created there directly. Each person is
    returned once, in first-seen order.
    """
    collection = db.collection(PERSONS_COLLECTION)
    linked_docs = collection.where(filter=FieldFilter('groupTreeIds', 'array_contains', group_tree_id)).stream()
    direct_docs = collection.where(filter=FieldFilter('treeId', '==', group_tree_id)).stream()

    people = {}
    for doc in itertools.chain(linked_docs, direct_docs):
        if doc.id not in people:
            people[doc.id] = _doc_to_person(doc)

    return list(people.values())


def update_person(db, person_id: str, partial: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Apply a partial update to a person.

    Args:
        db: Firestore database instance
        person_id: ID of the person to update
        partial: Fields to change. 'relationships' is unioned into the stored
            edges (never removes), 'groupTreeIds' replaces the stored list,
            everything else overwrites. personId and treeId are ignored,
            and firstName or lastName may not be set to an empty value.

    Returns:
        Optional[Dict[str, Any]]: The updated person, or None if it does not exist
    """
    patch = PersonPatch.from_partial(partial)

    doc_ref = db.collection(PERSONS_COLLECTION).document(person_id)
    if not doc_ref.get().exists:
        logger.warning(f"Cannot update person {person_id}: not found")
        return None

    update_data = dict(patch.attributes)
    if patch.relationships_union:
        update_data['relationships'] = firestore.ArrayUnion(patch.relationships_union)
    if patch.group_tree_ids is not None:
        # Full replace, last writer wins
        update_data['groupTreeIds'] = patch.group_tree_ids

    # Edges and attributes land in one write
    if update_data:
        doc_ref.update(update_data)

    return _doc_to_person(doc_ref.get())


def delete_relationship_from_person(db, person_id: str, relationship: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Remove one edge from a person. The related person's reciprocal edge is left alone.
    """
    edge = normalize_relationship(relationship)

    doc_ref = db.collection(PERSONS_COLLECTION).document(person_id)
    if not doc_ref.get().exists:
        logger.warning(f"Cannot remove relationship from person {person_id}: not found")
        return None

    doc_ref.update({'relationships': firestore.ArrayRemove([edge])})
    return _doc_to_person(doc_ref.get())


def delete_person(db, person_id: str) -> Dict[str, Any]:
    """
    Delete a person after scrubbing every edge that points at them.

    The people to scrub are found through the deleted person's own edge list,
    which relies on edges being symmetric. Scrubbing and deletion are
    committed as a single batch.

    Returns:
        dict: Result with success status; success is False when the person does not exist
    """
    collection = db.collection(PERSONS_COLLECTION)
    person_ref = collection.document(person_id)
    person_doc = person_ref.get()

    if not person_doc.exists:
        logger.warning(f"Cannot delete person {person_id}: not found")
        return {
            "success": False,
            "message": f"Person not found: {person_id}"
        }

    related_ids = []
    for relationship in person_doc.to_dict().get('relationships', []):
        related_id = relationship.get('relatedPersonId')
        if related_id and related_id != person_id and related_id not in related_ids:
            related_ids.append(related_id)

    batch = db.batch()
    scrubbed_persons = 0

    for related_id in related_ids:
        related_ref = collection.document(related_id)
        related_doc = related_ref.get()
        if not related_doc.exists:
            logger.warning(f"Person {person_id} has an edge to missing person {related_id}")
            continue

        stale_edges = [
            rel for rel in related_doc.to_dict().get('relationships', [])
            if rel.get('relatedPersonId') == person_id
        ]
        if stale_edges:
            batch.update(related_ref, {'relationships': firestore.ArrayRemove(stale_edges)})
            scrubbed_persons += 1

    batch.delete(person_ref)
    batch.commit()

    logger.info(f"Deleted person {person_id}, scrubbed edges from {scrubbed_persons} related persons")
    return {
        "success": True,
        "personId": person_id,
        "scrubbedPersons": scrubbed_persons
    }


def add_group_tree_id(db, person_id: str, group_tree_id: str):
    """Atomically add a group tree to a person's groupTreeIds."""
    db.collection(PERSONS_COLLECTION).document(person_id).update({
        'groupTreeIds': firestore.ArrayUnion([group_tree_id])
    })


def remove_group_tree_id(db, person_id: str, group_tree_id: str):
    """Atomically remove a group tree from a person's groupTreeIds."""
    db.collection(PERSONS_COLLECTION).document(person_id).update({
        'groupTreeIds': firestore.ArrayRemove([group_tree_id])
    })
