from datetime import datetime
from typing import Dict, Any, List, Optional, Callable
import logging

from firebase_admin import firestore

from errors import NotFoundError, PreconditionFailedError
from family_tree_manager import get_personal_tree, get_family_tree_by_id
from person_manager import (
    PERSONS_COLLECTION,
    person_document_defaults,
    delete_person,
    get_people_by_tree_id,
    get_person_by_id,
    update_person,
)

logger = logging.getLogger(__name__)

MERGE_RUNS_COLLECTION = 'treeMerges'

STATUS_MATERIALIZING = 'materializing'
STATUS_LINKING = 'linking'
STATUS_COMPLETED = 'completed'
STATUS_REVERTED = 'reverted'

# Biographical fields copied from a personal tree person into the group tree
COPIED_FIELDS = (
    'firstName', 'middleName', 'lastName', 'birthDate', 'birthPlace',
    'gender', 'status', 'dateOfDeath', 'placeOfDeath'
)

DuplicateMatcher = Callable[[Dict[str, Any], List[Dict[str, Any]]], Optional[Dict[str, Any]]]


def _lower(value):
    return value.lower() if isinstance(value, str) else value


def match_by_name_and_birth_date(person: Dict[str, Any], candidates: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Find a likely duplicate of a person among candidates.

    Best-effort heuristic: first and last name compared case-insensitively,
    birth date compared exactly. There is no confidence score and no
    confirmation step, so two different people sharing these three values
    are treated as one.
    """
    for candidate in candidates:
        if (_lower(candidate.get('firstName')) == _lower(person.get('firstName')) and
                _lower(candidate.get('lastName')) == _lower(person.get('lastName')) and
                candidate.get('birthDate') == person.get('birthDate')):
            return candidate
    return None


def requester_person_id(requester_id: str, group_tree_id: str) -> str:
    """Deterministic ID of the requester's own node in a group tree."""
    return f"{requester_id}_{group_tree_id}"


def _copy_for_group(group_tree_id: str, person: Dict[str, Any]) -> Dict[str, Any]:
    """
    Group tree document for a copy of a stored person.

    The source was accepted by the store once, so it is copied without the
    create-time checks. Edges are written in the linking pass once every ID
    is known.
    """
    data = {field_name: person.get(field_name) for field_name in COPIED_FIELDS}
    return person_document_defaults(group_tree_id, data)


def _now():
    return datetime.now().isoformat()


def _merge_result(merge_id, personal_tree_id, group_tree_id, mappings: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    person_id_map = {source_id: m['destinationPersonId'] for source_id, m in mappings.items()}
    created_ids = [m['destinationPersonId'] for m in mappings.values() if m['created']]
    # Several source persons can match one group person; count it once
    matched_ids = list(dict.fromkeys(
        m['destinationPersonId'] for m in mappings.values() if not m['created']
    ))

    return {
        "success": True,
        "message": f"Successfully merged {len(created_ids)} persons from personal tree to group tree",
        "mergeId": merge_id,
        "mergedPersons": len(created_ids),
        "matchedPersons": len(matched_ids),
        "personalTreeId": personal_tree_id,
        "groupTreeId": group_tree_id,
        "personIdMap": person_id_map,
        "createdPersonIds": created_ids,
        "matchedPersonIds": matched_ids
    }


def _create_group_person(db, group_tree_id: str, person: Dict[str, Any]) -> str:
    _, doc_ref = db.collection(PERSONS_COLLECTION).add(_copy_for_group(group_tree_id, person))
    return doc_ref.id


def _materialize_requester(db, person, requester_id, group_tree_id):
    destination_id = requester_person_id(requester_id, group_tree_id)
    doc_ref = db.collection(PERSONS_COLLECTION).document(destination_id)

    if doc_ref.get().exists:
        logger.info(f"Requester node {destination_id} already exists in group tree, reusing it")
        return destination_id, False

    doc_ref.set(_copy_for_group(group_tree_id, person))
    logger.info(f"Created user node in group tree: {person.get('firstName')} {person.get('lastName')} -> {destination_id}")
    return destination_id, True


def _materialize_persons(db, run_ref, requester_id, group_tree_id, source_persons, mappings, duplicate_matcher):
    """
    First pass: give every source person a destination person.

    Each mapping is recorded on the merge run as soon as it is known so an
    interrupted pass can continue where it stopped.
    """
    created_by_run = {m['destinationPersonId'] for m in mappings.values() if m['created']}
    existing_pool = [
        p for p in get_people_by_tree_id(db, group_tree_id)
        if p['personId'] not in created_by_run
    ]

    for person in source_persons:
        source_id = person['personId']
        if source_id in mappings:
            continue

        duplicate = duplicate_matcher(person, existing_pool)
        if duplicate:
            destination_id, created = duplicate['personId'], False
            logger.info(f"Mapped existing person: {person.get('firstName')} {person.get('lastName')} -> {destination_id}")
        elif source_id == requester_id:
            destination_id, created = _materialize_requester(db, person, requester_id, group_tree_id)
        else:
            destination_id, created = _create_group_person(db, group_tree_id, person), True
            logger.info(f"Duplicated person: {person.get('firstName')} {person.get('lastName')} -> {destination_id}")

        mapping = {
            'sourcePersonId': source_id,
            'destinationPersonId': destination_id,
            'created': created
        }
        run_ref.update({
            'mappings': firestore.ArrayUnion([mapping]),
            'updatedAt': _now()
        })
        mappings[source_id] = mapping


def _link_relationships(db, source_persons, person_id_map: Dict[str, str]) -> int:
    """
    Second pass: copy edges with both endpoints translated to destination IDs.

    Edges to persons that were not part of the merge are dropped. Updates use
    union semantics, so running this pass twice adds nothing.
    """
    linked_persons = 0

    for person in source_persons:
        destination_id = person_id_map.get(person['personId'])
        if not destination_id or not person.get('relationships'):
            continue

        translated = []
        for relationship in person['relationships']:
            related_destination_id = person_id_map.get(relationship.get('relatedPersonId'))
            if related_destination_id:
                translated.append({
                    'relatedPersonId': related_destination_id,
                    'type': relationship.get('type')
                })
            else:
                logger.debug(f"Dropping edge from {person['personId']} to unmerged person {relationship.get('relatedPersonId')}")

        if translated:
            update_person(db, destination_id, {'relationships': translated})
            linked_persons += 1

    return linked_persons


def _run_merge(db, run_ref, run: Dict[str, Any], source_persons, mappings, duplicate_matcher):
    if run['status'] == STATUS_MATERIALIZING:
        _materialize_persons(
            db, run_ref, run['requesterId'], run['groupTreeId'],
            source_persons, mappings, duplicate_matcher
        )
        run_ref.update({'status': STATUS_LINKING, 'updatedAt': _now()})

    person_id_map = {source_id: m['destinationPersonId'] for source_id, m in mappings.items()}
    linked_persons = _link_relationships(db, source_persons, person_id_map)
    run_ref.update({'status': STATUS_COMPLETED, 'updatedAt': _now()})

    logger.info(f"Merge {run_ref.id} completed: {len(mappings)} persons mapped, {linked_persons} with edges")
    return _merge_result(run_ref.id, run['personalTreeId'], run['groupTreeId'], mappings)


def merge_personal_tree_into_group(
    db,
    requester_id: str,
    group_tree_id: str,
    duplicate_matcher: DuplicateMatcher = match_by_name_and_birth_date
) -> Dict[str, Any]:
    """
    Merge a user's personal tree into a group tree by copying persons and relationships.

    Persons are found by tree membership only; relationship edges are not
    traversed. A source person that looks like someone already in the group
    tree is mapped onto that person instead of being copied. The requester's
    own node gets the deterministic ID "<requesterId>_<groupTreeId>".
    The personal tree is never modified.

    Args:
        db: Firestore database instance
        requester_id: The ID of the user requesting the merge
        group_tree_id: The ID of the group tree to merge into
        duplicate_matcher: Callable returning the existing group tree person a
            source person duplicates, or None

    Returns:
        Dict[str, Any]: The merge result, including the personIdMap needed to revert it

    Raises:
        NotFoundError: The requester has no personal tree or the group tree does not exist
    """
    logger.info(f"Merging personal tree of {requester_id} into group tree {group_tree_id}")

    try:
        personal_tree = get_personal_tree(db, requester_id)
        if not personal_tree:
            raise NotFoundError(f"No personal tree found for user {requester_id}")

        personal_tree_id = personal_tree['treeId']
        source_persons = get_people_by_tree_id(db, personal_tree_id)

        if not source_persons:
            return {
                "success": True,
                "message": "No persons to merge from personal tree",
                "mergedPersons": 0,
                "matchedPersons": 0,
                "personalTreeId": personal_tree_id,
                "groupTreeId": group_tree_id,
                "personIdMap": {}
            }

        if not get_family_tree_by_id(db, group_tree_id):
            raise NotFoundError(f"Group tree {group_tree_id} not found")

        run = {
            'requesterId': requester_id,
            'personalTreeId': personal_tree_id,
            'groupTreeId': group_tree_id,
            'status': STATUS_MATERIALIZING,
            'mappings': [],
            'createdAt': _now(),
            'updatedAt': _now()
        }
        run_ref = db.collection(MERGE_RUNS_COLLECTION).document()
        run_ref.set(run)

        return _run_merge(db, run_ref, run, source_persons, {}, duplicate_matcher)

    except Exception as e:
        logger.error(f"Error merging personal tree into group: {e}", exc_info=True)
        raise


def resume_merge(db, merge_id: str, duplicate_matcher: DuplicateMatcher = match_by_name_and_birth_date) -> Dict[str, Any]:
    """
    Continue a merge that stopped before completing.

    A run interrupted while materializing persons continues with the source
    persons it had not mapped yet; a run interrupted while linking reruns the
    linking pass. A completed run returns its stored result unchanged.
    """
    run_ref = db.collection(MERGE_RUNS_COLLECTION).document(merge_id)
    run_doc = run_ref.get()
    if not run_doc.exists:
        raise NotFoundError(f"Merge run {merge_id} not found")

    run = run_doc.to_dict()
    mappings = {m['sourcePersonId']: m for m in run.get('mappings', [])}

    if run['status'] == STATUS_REVERTED:
        raise PreconditionFailedError(f"Merge run {merge_id} was reverted and cannot be resumed")
    if run['status'] == STATUS_COMPLETED:
        return _merge_result(merge_id, run['personalTreeId'], run['groupTreeId'], mappings)

    logger.info(f"Resuming merge {merge_id} from status '{run['status']}' with {len(mappings)} persons mapped")
    source_persons = get_people_by_tree_id(db, run['personalTreeId'])
    return _run_merge(db, run_ref, run, source_persons, mappings, duplicate_matcher)


def revert_merge(db, group_tree_id: str, merge_result: Dict[str, Any]) -> Dict[str, Any]:
    """
    Revert a merge by deleting the persons it put into the group tree.

    When the result lists createdPersonIds only those are deleted, so persons
    that existed before the merge survive. Older results without that list
    fall back to every value of personIdMap. Persons outside the group tree
    are never deleted. Individual failures are logged and skipped.

    Raises:
        PreconditionFailedError: merge_result has no personIdMap
    """
    if not merge_result or merge_result.get('personIdMap') is None:
        raise PreconditionFailedError('No person ID map provided for revert operation')

    if merge_result.get('createdPersonIds') is not None:
        persons_to_delete = list(merge_result['createdPersonIds'])
    else:
        persons_to_delete = list(merge_result['personIdMap'].values())

    deleted_count = 0
    skipped_count = 0

    for person_id in persons_to_delete:
        try:
            person = get_person_by_id(db, person_id)
            if person is None:
                logger.warning(f"Person {person_id} already missing during revert")
                continue

            if person.get('treeId') != group_tree_id:
                logger.warning(f"Skipping person {person_id}: belongs to tree {person.get('treeId')}, not {group_tree_id}")
                skipped_count += 1
                continue

            if delete_person(db, person_id).get('success'):
                deleted_count += 1
        except Exception as e:
            logger.warning(f"Failed to delete person {person_id} during revert: {e}")

    merge_id = merge_result.get('mergeId')
    if merge_id:
        run_ref = db.collection(MERGE_RUNS_COLLECTION).document(merge_id)
        if run_ref.get().exists:
            run_ref.update({'status': STATUS_REVERTED, 'updatedAt': _now()})

    logger.info(f"Reverted merge in group tree {group_tree_id}: deleted {deleted_count} of {len(persons_to_delete)} persons")
    return {
        "success": True,
        "message": f"Reverted merge by deleting {deleted_count} persons from group tree",
        "attemptedPersons": len(persons_to_delete),
        "deletedPersons": deleted_count,
        "skippedPersons": skipped_count
    }


def get_tree_merge_stats(db, tree_id: str) -> Dict[str, Any]:
    """
    Gets relationship statistics for a tree.
    """
    persons = get_people_by_tree_id(db, tree_id)

    total_relationships = 0
    relationship_types = {}

    for person in persons:
        relationships = person.get('relationships') or []
        total_relationships += len(relationships)
        for relationship in relationships:
            rel_type = relationship.get('type')
            relationship_types[rel_type] = relationship_types.get(rel_type, 0) + 1

    return {
        "totalPersons": len(persons),
        "totalRelationships": total_relationships,
        "relationshipTypes": relationship_types,
        "averageRelationshipsPerPerson": total_relationships / len(persons) if persons else 0
    }
