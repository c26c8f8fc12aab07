"""Single-call multi-task generation against a streaming CLI agent.

One engine call carries every analysis task.  The stream is demultiplexed
into per-task documents as boundary markers complete, each document is
persisted as soon as it resolves, and the retry ladder (retry, degrade once,
salvage) keeps a run productive when the call hits turn or time limits.
Whatever the stream never delimited is recovered by the staged fallback pass
once the call terminates.
"""
