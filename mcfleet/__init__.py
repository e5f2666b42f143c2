"""mcfleet: Minecraft server fleet manager.

Single-host orchestrator that:
 - keeps a declarative record per game server (a *workload*)
 - turns each record into a Docker container definition
 - drives container lifecycle (start / stop / kill / restart / delete)
 - keeps the shared mc-router route table in sync with the fleet

Status is always derived from Docker plus in-flight transitions; it is never persisted.
"""
