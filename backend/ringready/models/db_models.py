# Supabase schema SQL for reference
# Run this in Supabase SQL editor

CALLS_TABLE = "calls"

CALL_COLUMNS = (
    "id",
    "call_id",
    "caller_id",
    "start_time",
    "end_time",
    "duration_seconds",
    "workflow_id",
    "transcription",
    "summary",
    "status",
    "tenant_id",
    "created_at",
)

CALLS_TABLE_SQL = """
CREATE TABLE calls (
  id bigserial PRIMARY KEY,
  call_id varchar(100) NOT NULL UNIQUE,  -- provider issued, reconciliation key
  caller_id varchar(100),
  start_time timestamptz,
  end_time timestamptz,
  duration_seconds int CHECK (duration_seconds >= 0),
  workflow_id varchar(100),
  transcription text,
  summary text,
  status varchar(20) DEFAULT 'started',
  tenant_id int NOT NULL DEFAULT 1,
  created_at timestamptz NOT NULL DEFAULT now()
);

CREATE INDEX calls_created_at_idx ON calls (created_at DESC);
CREATE INDEX calls_status_idx ON calls (status);
"""
