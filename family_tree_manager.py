from datetime import datetime
from typing import Dict, Any, Optional
import logging

from google.cloud.firestore_v1.base_query import FieldFilter

from person_manager import PERSONS_COLLECTION, build_person_document

logger = logging.getLogger(__name__)

FAMILY_TREES_COLLECTION = 'familyTrees'

# Firestore rejects batches with more writes than this
BATCH_WRITE_LIMIT = 500


def _new_tree_document(user_id: str, tree_name: str) -> Dict[str, Any]:
    return {
        'userId': user_id,
        'treeName': tree_name,
        'createdAt': datetime.now().isoformat(),
        'sharedUsers': []
    }


def _doc_to_tree(doc) -> Dict[str, Any]:
    return {'treeId': doc.id, **doc.to_dict()}


def create_family_tree(db, user_id: str, tree_name: str) -> str:
    """Create an empty family tree and return its ID."""
    _, doc_ref = db.collection(FAMILY_TREES_COLLECTION).add(_new_tree_document(user_id, tree_name))
    logger.info(f"Created family tree {doc_ref.id} ('{tree_name}') for user {user_id}")
    return doc_ref.id


def create_new_family_tree(db, user_id: str, tree_name: str, person_data: Dict[str, Any]) -> str:
    """
    Create a family tree together with the owner's own person.

    The owner's person uses the user ID as its person ID.

    Returns:
        str: ID of the new tree
    """
    tree_ref = db.collection(FAMILY_TREES_COLLECTION).document()
    person = build_person_document(tree_ref.id, person_data)

    batch = db.batch()
    batch.set(tree_ref, _new_tree_document(user_id, tree_name))
    batch.set(db.collection(PERSONS_COLLECTION).document(user_id), person)
    batch.commit()

    logger.info(f"Created family tree {tree_ref.id} ('{tree_name}') with self person {user_id}")
    return tree_ref.id


def create_personal_tree(db, user_id: str, person_data: Dict[str, Any]) -> str:
    """Create the user's personal tree, which is named after the user ID."""
    return create_new_family_tree(db, user_id, user_id, person_data)


def get_family_tree_by_id(db, tree_id: str) -> Optional[Dict[str, Any]]:
    doc = db.collection(FAMILY_TREES_COLLECTION).document(tree_id).get()
    if not doc.exists:
        return None
    return _doc_to_tree(doc)


def get_personal_tree(db, user_id: str) -> Optional[Dict[str, Any]]:
    """
    Find a user's personal tree: owned by the user, named after the user ID
    and not shared with anyone.
    """
    docs = (
        db.collection(FAMILY_TREES_COLLECTION)
        .where(filter=FieldFilter('userId', '==', user_id))
        .where(filter=FieldFilter('treeName', '==', user_id))
        .where(filter=FieldFilter('sharedUsers', '==', []))
        .limit(1)
        .get()
    )

    for doc in docs:
        return _doc_to_tree(doc)

    return None


def update_family_tree(db, tree_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Update a family tree. Ownership and creation time cannot be changed.
    """
    tree_ref = db.collection(FAMILY_TREES_COLLECTION).document(tree_id)
    if not tree_ref.get().exists:
        logger.warning(f"Cannot update family tree {tree_id}: not found")
        return None

    update_data = {
        key: value for key, value in (data or {}).items()
        if key not in ('createdAt', 'userId', 'treeId')
    }
    if update_data:
        tree_ref.update(update_data)

    return _doc_to_tree(tree_ref.get())


def delete_family_tree(db, tree_id: str) -> Optional[Dict[str, Any]]:
    """
    Delete a family tree and every person whose primary tree it is.

    Writes are batched; trees with more persons than one batch allows are
    committed in several batches, so such a delete is not atomic.

    Returns:
        Optional[Dict[str, Any]]: Result of the operation, or None if the tree does not exist
    """
    tree_ref = db.collection(FAMILY_TREES_COLLECTION).document(tree_id)
    if not tree_ref.get().exists:
        logger.warning(f"Cannot delete family tree {tree_id}: not found")
        return None

    person_docs = list(
        db.collection(PERSONS_COLLECTION).where(filter=FieldFilter('treeId', '==', tree_id)).stream()
    )
    refs = [doc.reference for doc in person_docs] + [tree_ref]

    for start in range(0, len(refs), BATCH_WRITE_LIMIT):
        batch = db.batch()
        for ref in refs[start:start + BATCH_WRITE_LIMIT]:
            batch.delete(ref)
        batch.commit()

    logger.info(f"Deleted family tree {tree_id} and {len(person_docs)} persons")
    return {
        "success": True,
        "message": "Family tree and all related persons deleted successfully.",
        "deletedPersons": len(person_docs)
    }
