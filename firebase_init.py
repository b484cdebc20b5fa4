import os
import logging

import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = '/etc/secrets/firebase_service_account.json'


def initialize_firebase():
    """
    Initialize Firebase Admin SDK if not already initialized.
    Returns the Firebase app.
    """
    try:
        # Try to get the existing app
        return firebase_admin.get_app()
    except ValueError:
        secret_file_path = os.environ.get('FIREBASE_CREDENTIALS_PATH', DEFAULT_CREDENTIALS_PATH)

        if os.path.exists(secret_file_path):
            cred = credentials.Certificate(secret_file_path)
            app = firebase_admin.initialize_app(cred)
            logger.info(f"Firebase initialized with service account from {secret_file_path}")
            return app

        # Development machines usually rely on gcloud application default credentials
        if os.environ.get('FLASK_ENV') == 'development':
            logger.warning(f"Secret file not found at {secret_file_path}, using application default credentials")
            return firebase_admin.initialize_app()

        raise FileNotFoundError(f"Secret file not found at: {secret_file_path}")


def get_firestore_client():
    """
    Get the Firestore client instance.
    """
    try:
        initialize_firebase()
        return firestore.client()
    except Exception as e:
        logger.error(f"Error getting Firestore client: {str(e)}")
        raise
