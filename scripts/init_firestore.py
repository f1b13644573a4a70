#!/usr/bin/env python3
"""
Initialize Firestore database schema for the Seminar Coordinator.

This script validates the connection, reports the collections used by the
coordinator and documents the composite indexes and security rules that
must be configured outside of the client library.
"""

import logging
import os
import sys
from typing import Optional

from google.cloud import firestore


# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

COLLECTIONS = [
    "speakers",
    "available_dates",
    "date_index",
    "agendas",
    "user_roles",
    "invitations",
    "user_availability",
]

# Composite indexes required by the read models and repositories
REQUIRED_INDEXES = [
    {
        "collection": "available_dates",
        "fields": [
            {"field": "lock_state", "order": "ASCENDING"},
            {"field": "calendar_date", "order": "ASCENDING"}
        ]
    },
    {
        "collection": "speakers",
        "fields": [
            {"field": "status", "order": "ASCENDING"},
            {"field": "created_at", "order": "ASCENDING"}
        ]
    },
    {
        "collection": "invitations",
        "fields": [
            {"field": "used", "order": "ASCENDING"},
            {"field": "created_at", "order": "DESCENDING"}
        ]
    },
]


class FirestoreSchemaInitializer:
    """Initialize Firestore database schema and indexes."""

    def __init__(self, project_id: Optional[str] = None) -> None:
        """Initialize with GCP project ID."""
        self.project_id = project_id or os.getenv("GCP_PROJECT_ID")
        if not self.project_id:
            raise ValueError("GCP_PROJECT_ID environment variable must be set")

        self.db = firestore.Client(project=self.project_id)

    def create_collections(self) -> None:
        """Document the collections (Firestore creates them on first write)."""
        for collection_name in COLLECTIONS:
            count = sum(1 for _ in self.db.collection(collection_name).limit(1).stream())
            state = "exists" if count else "created on first write"
            logger.info(f"Collection: {collection_name} ({state})")

    def create_indexes(self) -> None:
        """Document the composite indexes (create via gcloud CLI)."""
        logger.info("Required composite indexes (create via gcloud CLI):")
        for idx in REQUIRED_INDEXES:
            fields_str = ", ".join([f"{f['field']} {f['order']}" for f in idx["fields"]])
            logger.info(f"  {idx['collection']}: {fields_str}")

    def create_security_rules(self) -> None:
        """Document Firestore security rules."""
        rules = """
        rules_version = '2';
        service cloud.firestore {
          match /databases/{database}/documents {
            function role() {
              return get(/databases/$(database)/documents/user_roles/$(request.auth.uid)).data.role;
            }

            // Dates and the date index are written by the server only
            match /available_dates/{dateId} {
              allow read: if request.auth != null;
              allow write: if false;
            }
            match /date_index/{day} {
              allow read, write: if false;
            }

            // Speakers and agendas - organizers and fellows read, server writes
            match /speakers/{speakerId} {
              allow read: if request.auth != null;
              allow write: if false;
            }
            match /agendas/{agendaId} {
              allow read: if request.auth != null;
              allow write: if false;
            }

            // User roles - organizers manage, users read their own record
            match /user_roles/{userId} {
              allow read: if request.auth != null && (request.auth.uid == userId || role() == 'Organizer');
              allow write: if false;
            }

            // Invitations - server only
            match /invitations/{invitationId} {
              allow read, write: if false;
            }

            // Availability - users write their own records
            match /user_availability/{availabilityId} {
              allow read: if request.auth != null;
              allow write: if request.auth != null && request.resource.data.user_id == request.auth.uid;
            }
          }
        }
        """

        logger.info("Firestore Security Rules (deploy via Firebase Console):")
        logger.info(rules)

    def validate_connection(self) -> bool:
        """Validate Firestore connection and permissions."""
        try:
            test_doc = self.db.collection("_test").document("connection_test")
            test_doc.set({"timestamp": firestore.SERVER_TIMESTAMP})

            doc = test_doc.get()
            if not doc.exists:
                logger.error("Failed to read test document")
                return False

            test_doc.delete()
            logger.info("Firestore connection validated successfully")
            return True

        except Exception as e:
            logger.error(f"Firestore connection validation failed: {e}")
            return False

    def initialize_schema(self) -> bool:
        """Run complete schema initialization."""
        logger.info(f"Initializing Firestore schema for project: {self.project_id}")

        try:
            if not self.validate_connection():
                return False

            self.create_collections()
            self.create_indexes()
            self.create_security_rules()

            logger.info("Firestore schema initialization completed successfully")
            logger.info("Remember to:")
            logger.info("1. Create composite indexes via gcloud CLI")
            logger.info("2. Deploy security rules via Firebase Console")

            return True

        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            return False


def main() -> None:
    """Main entry point for schema initialization."""
    project_id = os.getenv("GCP_PROJECT_ID")
    if not project_id:
        logger.error("GCP_PROJECT_ID environment variable must be set")
        sys.exit(1)

    initializer = FirestoreSchemaInitializer(project_id)
    success = initializer.initialize_schema()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
