"""
Timeline Explorer: ingestion and query engine for forensic timelines.

Typical use:

    from timeline_explorer.session.session_manager import SessionManager
    from timeline_explorer.search.query_engine import QueryRequest

    manager = SessionManager()
    handle, result = manager.import_file("evidence.csv")
    page = manager.query_rows(handle, QueryRequest(search_term="mimikatz"))
    manager.close_all()
"""

__version__ = "0.1.0"
