"""
FANTASY EXCHANGE: Runic Index opening market

Baked-in initial listing (25 companies, all inside the new-listing band) and
opening headlines. Used only when no prior hour exists in KV.
"""

from tools.market_models import Company, MarketHourState, NewsItem

SEED_COMPANIES = [
    ("FIRE",  "Fireball",             14.60),
    ("ORC",   "Orc Mercenaries",       9.35),
    ("PATRN", "Dark Patrons",          6.80),
    ("SNEAK", "Sneak Attack",         11.20),
    ("HEAL",  "Sanctified Healing",   18.90),
    ("PLAG",  "Plague Wards",         12.40),
    ("MITH",  "Mithril",              22.30),
    ("DRAGN", "Dragonfire Insurance",  8.75),
    ("CARVN", "Caravan Guilds",       16.10),
    ("PORTL", "Portal Networks",      19.40),
    ("DIVIN", "Divination",           15.30),
    ("RELIC", "Relic Trade",           5.60),
    ("DWARF", "Dwarven Forges",       17.20),
    ("ELIX",  "Elixirs",              10.90),
    ("GRIFF", "Griffon Riders",       13.70),
    ("RUNE",  "Runesmiths",           21.60),
    ("NECRO", "Necromancy",            4.10),
    ("FAE",   "Fey Courts",            7.90),
    ("BARD",  "Bardic Colleges",       6.30),
    ("GOLEM", "Golemworks",           20.20),
    ("SHIP",  "Spelljammers",         12.80),
    ("CROWN", "Crown Tax Levies",      9.90),
    ("BEAST", "Beast Taming",          8.20),
    ("ALCH",  "Alchemist Guild",      23.70),
    ("WARD",  "Ancient Wards",        14.10),
]

SEED_HEADLINES = [
    (
        "seed-big-1",
        "Sky-Scar Comet Spurs Prophecy Rush",
        "A green-tailed comet carved a glowing wake over the Free Cities. Seers sell readings, "
        "star-mages buy reagents, and nervous caravans pay extra for wards against 'falling fire'.",
        "Boosts divination, wards, and astral reagents; pressures caravan security costs; "
        "mild demand for fire mitigation.",
    ),
    (
        "seed-big-2",
        "Saltmarsh Plague Fever Hits Dock Wards",
        "Dockside healers report a fever spreading through Saltmarsh wharves. Apothecaries raise "
        "prices, clerics are overwhelmed, and quarantine seals slow imports of herbs and reagents.",
        "Healers and potions up; trade and smuggling volatility; herb supply tightens.",
    ),
    (
        "seed-big-3",
        "Ironhold Issues Anti-Necromancy Edict",
        "The Ironhold Synod bans corpse-labor within its walls after a crypt incident. Enforcement "
        "squads seize grimoires and sanctify old tunnels; legitimate funerary guilds gain contracts.",
        "Necromancy down; sanctified wards and funerary services up; black-market bone trade spikes.",
    ),
]


def make_seed_market_hour(hour_key: str) -> MarketHourState:
    companies = [
        Company(id=ticker, name=name, concept=name, price=price, prev_price=price)
        for ticker, name, price in SEED_COMPANIES
    ]
    news = [
        NewsItem(id=nid, kind="BIG", hour_key=hour_key, title=title, body=body, impact=impact)
        for nid, title, body, impact in SEED_HEADLINES
    ]
    return MarketHourState(hour_key=hour_key, source="seed", companies=companies, news=news)
