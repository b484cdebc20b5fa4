from flask import Flask, request, jsonify
from flask_cors import CORS
from datetime import datetime
from dotenv import load_dotenv
import logging
import os

from errors import NotFoundError, PreconditionFailedError
from firebase_init import get_firestore_client
from family_tree_manager import get_family_tree_by_id
from group_membership_manager import add_user_to_group_tree, remove_user_from_group_tree
from person_manager import (
    create_person,
    create_person_self,
    delete_person,
    delete_relationship_from_person,
    get_people_by_group_tree_id,
    get_people_by_tree_id,
    get_person_by_id,
    update_person,
)
from relationship_manager import add_relationship, remove_relationship
from tree_merge_manager import (
    get_tree_merge_stats,
    merge_personal_tree_into_group,
    resume_merge,
    revert_merge,
)

load_dotenv()

logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def _error_response(e, action):
    """Map a manager error to a JSON response."""
    if isinstance(e, NotFoundError):
        return jsonify({"success": False, "message": str(e)}), 404
    if isinstance(e, PreconditionFailedError):
        return jsonify({"success": False, "message": str(e)}), 400

    logger.error(f"Error {action}: {e}", exc_info=True)
    return jsonify({
        "success": False,
        "message": f"Failed {action}",
        "error": str(e)
    }), 500


def _missing_fields_response(*fields):
    return jsonify({
        "success": False,
        "message": f"Missing required fields: {', '.join(fields)}"
    }), 400


def create_app(db=None):
    """
    Build the Flask app. The Firestore client is created from the Firebase
    service account unless one is passed in.
    """
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes

    if db is None:
        db = get_firestore_client()
        logger.info("Firebase initialized successfully")

    @app.route('/health', methods=['GET'])
    def health_check():
        """Simple endpoint to check if the API is running."""
        return jsonify({"status": "healthy", "timestamp": datetime.now().isoformat()})

    # ---- Persons ----

    @app.route('/api/trees/<tree_id>/persons', methods=['POST'])
    def create_person_api(tree_id):
        try:
            person_data = request.get_json(silent=True) or {}

            if not get_family_tree_by_id(db, tree_id):
                return jsonify({"success": False, "message": "Tree doesn't exist"}), 400

            if not person_data.get('firstName') or not person_data.get('lastName'):
                return _missing_fields_response('firstName', 'lastName')

            person = create_person(db, tree_id, person_data)
            return jsonify(person), 201
        except Exception as e:
            return _error_response(e, "creating person")

    @app.route('/api/trees/<tree_id>/persons/self', methods=['POST'])
    def create_person_self_api(tree_id):
        try:
            person_data = dict(request.get_json(silent=True) or {})
            uid = person_data.pop('uid', None)

            if not uid:
                return _missing_fields_response('uid')

            person = create_person_self(db, tree_id, uid, person_data)
            return jsonify({
                "message": "Self person created successfully.",
                "person": person
            }), 201
        except Exception as e:
            return _error_response(e, "creating self person")

    @app.route('/api/trees/<tree_id>/persons', methods=['GET'])
    def get_people_by_tree_api(tree_id):
        try:
            people = get_people_by_tree_id(db, tree_id)
            if not people:
                return jsonify({"success": False, "message": "No people found in this tree."}), 404
            return jsonify(people)
        except Exception as e:
            return _error_response(e, "getting people by tree")

    @app.route('/api/group-trees/<group_tree_id>/persons', methods=['GET'])
    def get_people_by_group_tree_api(group_tree_id):
        try:
            return jsonify(get_people_by_group_tree_id(db, group_tree_id))
        except Exception as e:
            return _error_response(e, "getting people by group tree")

    @app.route('/api/persons/<person_id>', methods=['GET'])
    def get_person_api(person_id):
        try:
            person = get_person_by_id(db, person_id)
            if not person:
                return jsonify({"success": False, "message": "Person not found"}), 404
            return jsonify(person)
        except Exception as e:
            return _error_response(e, "getting person")

    @app.route('/api/persons/<person_id>', methods=['PUT'])
    def update_person_api(person_id):
        try:
            updated_person = update_person(db, person_id, request.get_json(silent=True) or {})
            if not updated_person:
                return jsonify({"success": False, "message": "Person not found"}), 404
            return jsonify(updated_person)
        except Exception as e:
            return _error_response(e, "updating person")

    @app.route('/api/persons/<person_id>', methods=['DELETE'])
    def delete_person_api(person_id):
        try:
            result = delete_person(db, person_id)
            if not result.get('success'):
                return jsonify(result), 404
            return jsonify({**result, "message": "Person deleted successfully"})
        except Exception as e:
            return _error_response(e, "deleting person")

    @app.route('/api/persons/<person_id>/relationships', methods=['DELETE'])
    def delete_relationship_from_person_api(person_id):
        try:
            relationship = (request.get_json(silent=True) or {}).get('relationshipToRemove')
            if not relationship:
                return _missing_fields_response('relationshipToRemove')

            updated_person = delete_relationship_from_person(db, person_id, relationship)
            if not updated_person:
                return jsonify({"success": False, "message": "Person not found"}), 404
            return jsonify(updated_person)
        except Exception as e:
            return _error_response(e, "deleting relationship from person")

    # ---- Symmetric relationships ----

    @app.route('/api/relationships', methods=['POST', 'DELETE'])
    def relationship_api():
        try:
            data = request.get_json(silent=True) or {}
            person_id = data.get('personId')
            related_person_id = data.get('relatedPersonId')
            relationship_type = data.get('type')

            if not person_id or not related_person_id or not relationship_type:
                return _missing_fields_response('personId', 'relatedPersonId', 'type')

            if request.method == 'POST':
                result = add_relationship(db, person_id, related_person_id, relationship_type)
            else:
                result = remove_relationship(db, person_id, related_person_id, relationship_type)

            if not result:
                return jsonify({"success": False, "message": "Person not found"}), 404
            return jsonify(result), 201 if request.method == 'POST' else 200
        except Exception as e:
            return _error_response(e, "updating relationship")

    # ---- Group membership ----

    @app.route('/api/group-trees/<group_tree_id>/members', methods=['POST'])
    def add_group_member_api(group_tree_id):
        try:
            user_id = (request.get_json(silent=True) or {}).get('userId')
            if not user_id:
                return _missing_fields_response('userId')

            result = add_user_to_group_tree(db, user_id, group_tree_id)
            return jsonify(result), 200 if result.get('success') else 404
        except Exception as e:
            return _error_response(e, "adding user to group tree")

    @app.route('/api/group-trees/<group_tree_id>/members/<user_id>', methods=['DELETE'])
    def remove_group_member_api(group_tree_id, user_id):
        try:
            result = remove_user_from_group_tree(db, user_id, group_tree_id)
            return jsonify(result), 200 if result.get('success') else 404
        except Exception as e:
            return _error_response(e, "removing user from group tree")

    # ---- Tree merge ----

    @app.route('/api/tree-merge/execute', methods=['POST'])
    def execute_merge_api():
        try:
            data = request.get_json(silent=True) or {}
            requester_id = data.get('requesterId')
            group_tree_id = data.get('groupTreeId')

            if not requester_id or not group_tree_id:
                return _missing_fields_response('requesterId', 'groupTreeId')

            return jsonify(merge_personal_tree_into_group(db, requester_id, group_tree_id))
        except Exception as e:
            return _error_response(e, "executing merge operation")

    @app.route('/api/tree-merge/<tree_id>/revert', methods=['POST'])
    def revert_merge_api(tree_id):
        try:
            merge_result = (request.get_json(silent=True) or {}).get('mergeResult')
            if not merge_result:
                return _missing_fields_response('mergeResult')

            return jsonify(revert_merge(db, tree_id, merge_result))
        except Exception as e:
            return _error_response(e, "reverting merge operation")

    @app.route('/api/tree-merge/runs/<merge_id>/resume', methods=['POST'])
    def resume_merge_api(merge_id):
        try:
            return jsonify(resume_merge(db, merge_id))
        except Exception as e:
            return _error_response(e, "resuming merge operation")

    @app.route('/api/tree-merge/<tree_id>/stats', methods=['GET'])
    def tree_merge_stats_api(tree_id):
        try:
            return jsonify(get_tree_merge_stats(db, tree_id))
        except Exception as e:
            return _error_response(e, "getting tree merge statistics")

    return app


if __name__ == '__main__':
    print("Starting Flask server...")
    create_app().run(debug=os.environ.get('FLASK_ENV') == 'development',
                     host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
