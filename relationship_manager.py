from typing import Dict, Any, List, Optional
import logging

from firebase_admin import firestore

from errors import PreconditionFailedError
from person_manager import PERSONS_COLLECTION, normalize_relationship

logger = logging.getLogger(__name__)

RECIPROCAL_TYPES = {
    'parent': 'child',
    'child': 'parent',
    'spouse': 'spouse',
}


def reciprocal_type(relationship_type: str) -> str:
    """
    Get the edge type stored on the other end of a relationship.

    If B is A's parent, A holds {B, 'parent'} and B holds {A, 'child'}.
    """
    if relationship_type not in RECIPROCAL_TYPES:
        raise PreconditionFailedError(f"Invalid relationship type '{relationship_type}'")
    return RECIPROCAL_TYPES[relationship_type]


def _edge_pair(person_id: str, related_person_id: str, relationship_type: str):
    if person_id == related_person_id:
        raise PreconditionFailedError("A person cannot be related to themselves")

    edge = normalize_relationship({'relatedPersonId': related_person_id, 'type': relationship_type})
    reciprocal = {'relatedPersonId': person_id, 'type': reciprocal_type(relationship_type)}
    return edge, reciprocal


def add_relationship(db, person_id: str, related_person_id: str, relationship_type: str) -> Optional[Dict[str, Any]]:
    """
    Add a relationship and its reciprocal edge in one batch.

    Args:
        db: Firestore database instance
        person_id: ID of the edge holder
        related_person_id: ID of the related person
        relationship_type: Role of the related person relative to the holder (parent, child, spouse)

    Returns:
        Optional[Dict[str, Any]]: Both edges written, or None if either person does not exist
    """
    edge, reciprocal = _edge_pair(person_id, related_person_id, relationship_type)

    collection = db.collection(PERSONS_COLLECTION)
    person_ref = collection.document(person_id)
    related_ref = collection.document(related_person_id)

    if not person_ref.get().exists or not related_ref.get().exists:
        logger.warning(f"Cannot relate {person_id} and {related_person_id}: person not found")
        return None

    batch = db.batch()
    batch.update(person_ref, {'relationships': firestore.ArrayUnion([edge])})
    batch.update(related_ref, {'relationships': firestore.ArrayUnion([reciprocal])})
    batch.commit()

    logger.info(f"Added {relationship_type} edge {person_id} -> {related_person_id}")
    return {
        "success": True,
        "personId": person_id,
        "relatedPersonId": related_person_id,
        "edge": edge,
        "reciprocalEdge": reciprocal
    }


def remove_relationship(db, person_id: str, related_person_id: str, relationship_type: str) -> Optional[Dict[str, Any]]:
    """
    Remove a relationship and its reciprocal edge in one batch.
    """
    edge, reciprocal = _edge_pair(person_id, related_person_id, relationship_type)

    collection = db.collection(PERSONS_COLLECTION)
    person_ref = collection.document(person_id)
    related_ref = collection.document(related_person_id)

    person_exists = person_ref.get().exists
    related_exists = related_ref.get().exists
    if not person_exists and not related_exists:
        logger.warning(f"Cannot unrelate {person_id} and {related_person_id}: neither person exists")
        return None

    # A missing endpoint still gets its dangling edge removed from the survivor
    batch = db.batch()
    if person_exists:
        batch.update(person_ref, {'relationships': firestore.ArrayRemove([edge])})
    if related_exists:
        batch.update(related_ref, {'relationships': firestore.ArrayRemove([reciprocal])})
    batch.commit()

    logger.info(f"Removed {relationship_type} edge {person_id} -> {related_person_id}")
    return {
        "success": True,
        "personId": person_id,
        "relatedPersonId": related_person_id,
        "edge": edge,
        "reciprocalEdge": reciprocal
    }


def find_asymmetric_edges(persons: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    List every edge whose reciprocal is missing.

    Only edges between persons in the given list are checked; edges pointing
    outside it cannot be judged and are ignored.
    """
    edges_by_person = {
        person['personId']: person.get('relationships', []) for person in persons
    }

    asymmetric = []
    for person_id, relationships in edges_by_person.items():
        for rel in relationships:
            related_id = rel.get('relatedPersonId')
            if related_id not in edges_by_person:
                continue

            expected = {'relatedPersonId': person_id, 'type': RECIPROCAL_TYPES.get(rel.get('type'))}
            if expected not in edges_by_person[related_id]:
                asymmetric.append({
                    'personId': person_id,
                    'relatedPersonId': related_id,
                    'type': rel.get('type')
                })

    return asymmetric
