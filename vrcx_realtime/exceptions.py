"""Error taxonomy shared by the store readers and change capture"""


class CDCError(Exception):
    """Base exception for change capture errors"""
    pass


class StoreUnavailableError(CDCError):
    """The store file is missing or cannot be opened"""
    pass


class QueryError(CDCError):
    """A statement against the store failed"""
    pass


class TableMissingError(QueryError):
    """An expected table does not exist (yet)"""
    pass


class SubscriberDeliveryError(CDCError):
    """A message could not be handed to a subscriber"""
    pass


class SubscriptionSetupError(CDCError):
    """A subscription request carried invalid or missing parameters"""
    pass
