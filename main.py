# main.py
from fieldflow.client import FieldFlowClient
from fieldflow.common.exceptions import InvalidTransition
from fieldflow.common.job import Actor
from fieldflow.config import Settings, configure_logging


if __name__ == "__main__":
    configure_logging("INFO")

    # 1. Wire everything in-process; inline bus delivery keeps the demo deterministic
    client = FieldFlowClient(settings=Settings(bus_partitions=0))
    sales = Actor(id="sam", roles=frozenset({"sales"}))
    crew = Actor(id="cory", roles=frozenset({"crew"}))

    # 2. A converted quote becomes a Draft job
    job = client.create_job(
        client_id="client-42",
        payload={
            "line_items": [
                {"description": "Crown reduction", "price": 850.0, "selected": True},
                {"description": "Cabling", "price": 300.0, "selected": False},
            ],
            "stump_grinding_price": 150,
        },
    )
    print(f"Created job {job.id} in state {job.state.value}")

    # 3. Walk it through its lifecycle
    result = client.request_transition(job.id, "scheduled", sales, reason="Client confirmed")
    print(f"-> {result.state.value} (transition {result.transition_id})")

    try:
        client.request_transition(job.id, "completed", crew)
    except InvalidTransition as e:
        print(f"Rejected: {e.message}")

    client.request_transition(job.id, "in_progress", crew)
    client.request_transition(job.id, "completed", crew)
    client.wait_for_automation(timeout=5)

    # 4. Inspect the audit trail and what automation did
    print("\nHistory:")
    for transition in client.get_transition_history(job.id):
        print(f"  {transition.from_state.value} -> {transition.to_state.value} by {transition.actor_id}")

    print("\nAutomation runs:")
    for run in client.get_automation_runs(job_id=job.id):
        print(f"  {run.rule_id}: {run.status.value}")

    invoice = client.invoices.find_by_job(job.id)
    print(f"\nInvoice {invoice.id}: {invoice.amount:.2f}, due {invoice.due_date}")
    print(f"Client category: {client.clients.get_category('client-42')}")

    client.close()
    print("\nDemonstration finished.")
