"""ConvoFlow — minimal end-to-end example.

Run:
    python examples/hello.py
"""

from pathlib import Path

from convoflow import MemoryExecutionStore, OutboxSender, Runner, load_flow_file


if __name__ == "__main__":
    sender = OutboxSender(echo=lambda text: print(f"  bot> {text}"))
    runner = Runner(
        MemoryExecutionStore(),
        sender,
        flows=[load_flow_file(Path(__file__).with_name("welcome.yaml"))],
    )
    runner.on("node_end", lambda ex, node, action, elapsed:
        print(f"  ✓ {node.id} ({node.type}) → '{action}'  ({elapsed*1000:.1f}ms)"))

    print("Starting welcome flow...")
    execution_id = runner.start_execution("welcome", "+55 11 99999-0000",
                                          {"contact_name": "Ana"})
    print(f"status   : {runner.get_execution(execution_id)['status']}")

    print("Contact replies 'Sim, quero!'...")
    runner.on_inbound_message("5511999990000", "Sim, quero!")
    view = runner.get_execution(execution_id)
    print(f"status   : {view['status']}")
    print(f"log      : {len(view['log'])} entries")
    runner.close()
