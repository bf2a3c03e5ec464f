from reply_orchestrator.orchestrator import run

run()
