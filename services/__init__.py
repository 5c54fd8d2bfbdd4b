"""
Generation Services

- orchestrator: job state machine, persistence, HTTP surface
- billing: credit ledger and owner preferences
- video_generation: provider client, poller, engine selector, completion
- storage: asset relocation into permanent storage
- streaming: per-job progress broadcaster and SSE formatting
"""
