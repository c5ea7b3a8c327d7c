# support_agent/models/__init__.py

# Import the Base object
from support_agent.database import Base

# Import all model classes so they register on Base.metadata
from .conversation import Conversation
from .message import Message
from .faq import FAQ
