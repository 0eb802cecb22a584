from infrastructure.repositories.sqlite_corpus_store import SqliteCorpusStore

__all__ = ["SqliteCorpusStore"]
