"""Error taxonomy shared by the store, identity, session, publisher and admin code.

Routers translate these into ``HTTPException`` responses; nothing here is
meant to escape to the client as an unhandled fault.
"""


class UBusError(Exception):
    """Base class for every error raised by the ubus package."""

    message = "Something went wrong."

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message


# --- Identity ---
class IdentityError(UBusError):
    message = "Authentication failed."


class InvalidCredentialsError(IdentityError):
    message = "Incorrect email or password."


class EmailAlreadyInUseError(IdentityError):
    message = "The email address is already in use by another account."


class WeakPasswordError(IdentityError):
    message = "Password should be at least 6 characters."


class InvalidEmailError(IdentityError):
    message = "The email address is badly formatted."


class SignUpDisabledError(IdentityError):
    message = "Admin accounts cannot be created from the sign-up page."


class InvalidTokenError(IdentityError):
    message = "Could not validate credentials"


# --- Directory ---
class DirectoryConsistencyError(UBusError):
    message = "No user data found for this account."


class StoreError(UBusError):
    message = "Directory store operation failed."


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class MissingIndexError(StoreError):
    def __init__(self, collection: str, field: str):
        super().__init__(f"This query requires an index on {collection}.{field}.")
        self.collection = collection
        self.field = field


class StoreWriteError(StoreError):
    message = "Failed to persist changes."


class TransactionError(StoreError):
    message = "Transaction aborted."


class SubscriptionError(UBusError):
    message = "Live subscription failed."


# --- Driver side ---
class PublisherError(UBusError):
    message = "Location publishing failed."


class NoBusAssignedError(PublisherError):
    message = "Cannot start trip: no bus assigned."


class GeolocationError(PublisherError):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    POSITION_UNAVAILABLE = "POSITION_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"

    def __init__(self, code: str, message=None):
        super().__init__(message or code.replace("_", " ").capitalize())
        self.code = code


# --- Admin side ---
class AssignmentError(UBusError):
    message = "Failed to update assignment."
