"""Task orchestration and resilience engine.

A goal becomes a task tree owned by a team of agents. Tasks run through tool
calls selected by capability, progress is checkpointed per step, failures are
classified into a fixed taxonomy that drives recovery or escalation, and a
marginal-return model decides whether another revision is worth paying for.

Everything durable lives in one SQLite database behind
`OrchestratorRepository`; status changes are compare-and-swap updates and
every change appends an audit event in the same transaction.
"""
