import logging

from person_manager import get_person_by_id, add_group_tree_id, remove_group_tree_id

logger = logging.getLogger(__name__)


def add_user_to_new_group_tree(db, user_id: str, group_tree_id: str):
    """
    Add the creator of a new group as a node of the group's tree.

    Args:
        db: Firestore database instance
        user_id: The user creating the group
        group_tree_id: ID of the new group tree

    Returns:
        dict: Result of the operation with success status and message
    """
    logger.info(f"Adding user {user_id} as node to new group tree {group_tree_id}")

    user_person = get_person_by_id(db, user_id)
    if not user_person:
        logger.warning(f"No user person record found for {user_id}")
        return {
            "success": False,
            "message": "User person record not found"
        }

    if group_tree_id not in (user_person.get('groupTreeIds') or []):
        add_group_tree_id(db, user_id, group_tree_id)

    return {
        "success": True,
        "groupTreeId": group_tree_id,
        "message": f"Successfully added user {user_id} to group tree {group_tree_id}"
    }


def add_user_to_group_tree(db, user_id: str, group_tree_id: str):
    """
    Add a user joining an existing group as a single node of its tree.
    Only the user's own person is linked; no family data is copied.
    """
    logger.info(f"Adding user {user_id} to existing group tree {group_tree_id}")

    user_person = get_person_by_id(db, user_id)
    if not user_person:
        logger.warning(f"No user person record found for {user_id}")
        return {
            "success": False,
            "message": "User person record not found"
        }

    if group_tree_id in (user_person.get('groupTreeIds') or []):
        logger.info(f"User {user_id} already part of group tree {group_tree_id}")
        return {
            "success": True,
            "message": "User already in group tree"
        }

    add_group_tree_id(db, user_id, group_tree_id)

    logger.info(f"Added user {user_id} to group tree {group_tree_id}")
    return {
        "success": True,
        "message": f"User {user_id} added to group tree {group_tree_id}",
        "groupTreeId": group_tree_id
    }


def remove_user_from_group_tree(db, user_id: str, group_tree_id: str):
    """Unlink a user's own person from a group tree."""
    logger.info(f"Removing user {user_id} from group tree {group_tree_id}")

    user_person = get_person_by_id(db, user_id)
    if not user_person:
        logger.warning(f"No user person record found for {user_id}")
        return {
            "success": False,
            "message": "User person record not found"
        }

    if group_tree_id not in (user_person.get('groupTreeIds') or []):
        logger.info(f"User {user_id} is not in group tree {group_tree_id}")
        return {
            "success": True,
            "message": "User not in group tree"
        }

    remove_group_tree_id(db, user_id, group_tree_id)

    logger.info(f"Removed user {user_id} from group tree {group_tree_id}")
    return {
        "success": True,
        "message": f"User {user_id} removed from group tree {group_tree_id}",
        "groupTreeId": group_tree_id
    }
