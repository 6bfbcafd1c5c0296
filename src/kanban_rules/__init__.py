"""
Kanban Column Rules Engine

Per-column rules for a kanban board:
- Validation rules gating which cards may enter a column
- Action rules fired on enter, on exit, or periodically while a card stays
- Color rules classifying cards by time since their last update
"""

__version__ = "0.1.0"
