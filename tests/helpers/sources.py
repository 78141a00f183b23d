"""
Mocked crawl sources matching the ``test_sources`` fixture: a JSON API
addressed by id and a wiki addressed by name.
"""

import json

SPECIES = {
    1: {"name": "Bulbasaur", "types": ["grass", "poison"], "height": 0.7, "weight": 6.9, "rate": 45},
    4: {"name": "Charmander", "types": ["fire"], "height": 0.6, "weight": 8.5, "rate": 45},
    25: {"name": "Pikachu", "types": ["electric"], "height": 0.4, "weight": 6.0, "rate": 190},
}


def api_body(entity_id, catch_rate=None):
    s = SPECIES[entity_id]
    return json.dumps(
        {
            "name": s["name"],
            "types": s["types"],
            "height": s["height"],
            "weight": s["weight"],
            "capture": {"rate": catch_rate or s["rate"]},
            "flavor": [f"{s['name']} flavor text."],
        }
    )


def wiki_body(name):
    return (
        f"<html><body><h1>{name}</h1>"
        f"<ul class='abilities'><li>{name} Ability</li></ul>"
        f"<ul class='locations'><li>Route 1</li></ul></body></html>"
    )


def mock_sources(m, catch_rates=None):
    """Register robots.txt and one page per species on both sources."""
    catch_rates = catch_rates or {}
    m.get("https://dex.example.com/robots.txt", status=404, repeat=True)
    m.get("https://wiki.example.com/robots.txt", status=200, body="User-agent: *\nDisallow: /wiki/Special:\n", repeat=True)
    for entity_id, s in SPECIES.items():
        m.get(
            f"https://dex.example.com/api/species/{entity_id}",
            status=200,
            body=api_body(entity_id, catch_rates.get(entity_id)),
        )
        m.get(f"https://wiki.example.com/wiki/{s['name']}", status=200, body=wiki_body(s["name"]))
