from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict

from .graph import ProgressionGraph, graph_from_payload

SAMPLE_CAMPAIGN_PATH = Path(__file__).resolve().parent / "resources" / "sample_campaign.json"


def load_campaign_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Campaign file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def command_summary(graph: ProgressionGraph) -> None:
    stats = graph.summary()
    print("== Campaign Summary ==")
    print(f"Title: {graph.name or graph.campaign_id}")
    print(f"Routes: {stats['routes']} | Markers: {stats['markers']} | Questions: {stats['questions']}")
    print(f"Max score: {stats['max_score']}")
    if graph.unlock_radius_m is not None:
        print(f"Unlock radius override: {graph.unlock_radius_m}m")
    print()

    completed: list = []
    for route in graph.routes:
        print(f"- {route.id}: {route.name}")
        if route.starting_hint:
            print(f"  Starting hint: {route.starting_hint}")
        for marker in graph.route_markers(route.id):
            clue = graph.hint_for_marker(marker.id, completed)
            print(
                f"  [{marker.order_index}] {marker.name or marker.id} "
                f"({marker.position.lat}, {marker.position.lng}) via {marker.location_kind}"
            )
            if clue:
                print(f"      Clue: {clue}")
            for question in marker.questions:
                print(f"      Q ({question.kind}, {question.points} pts): {question.prompt}")
            completed.append(marker.id)
        print()


def command_import(payload: Dict[str, Any]) -> None:
    from app import create_app
    from gamemode import storage

    app = create_app()
    with app.app_context():
        campaign = storage.import_campaign(payload)
        graph = storage.load_graph(campaign.id)
        stats = graph.summary()
        print(
            f"Imported campaign {campaign.id} ({stats['routes']} routes, "
            f"{stats['markers']} markers, {stats['questions']} questions)"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect or import a game-mode campaign.")
    parser.add_argument("command", choices=["summary", "import"], help="Command to run")
    parser.add_argument(
        "--path",
        default=SAMPLE_CAMPAIGN_PATH,
        type=Path,
        help="Path to campaign JSON",
    )
    args = parser.parse_args()

    payload = load_campaign_file(args.path)

    if args.command == "summary":
        try:
            graph = graph_from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            parser.error(f"Campaign file is invalid: {exc}")
        command_summary(graph)
    elif args.command == "import":
        command_import(payload)
    else:
        parser.error(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
