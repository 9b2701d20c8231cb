from tender_pipeline.db.postgres import SCHEMA_STATEMENTS, PostgresTxRunner

__all__ = ["SCHEMA_STATEMENTS", "PostgresTxRunner"]
