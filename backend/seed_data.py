"""Starter knowledge base: top players with continent, position, league,
nationality, club and award attributes, phrased in Arabic."""

from dataclasses import dataclass

from knowledge_store import KnowledgeStore
from text_utils import normalize

# group -> [(value, label, question)]
ATTRIBUTE_SETS = {
    "continent": [
        ("europe", "أوروبا", "هل هو من أوروبا؟"),
        ("south america", "أمريكا الجنوبية", "هل هو من أمريكا الجنوبية؟"),
        ("africa", "أفريقيا", "هل هو من أفريقيا؟"),
        ("asia", "آسيا", "هل هو من آسيا؟"),
        ("north america", "أمريكا الشمالية", "هل هو من أمريكا الشمالية؟"),
    ],
    "position": [
        ("forward", "مهاجم", "هل يلعب كمهاجم؟"),
        ("midfielder", "لاعب وسط", "هل يلعب كلاعب وسط؟"),
        ("defender", "مدافع", "هل يلعب كمدافع؟"),
        ("goalkeeper", "حارس مرمى", "هل هو حارس مرمى؟"),
    ],
    "league": [
        ("premier league", "الدوري الإنجليزي", "هل يلعب في الدوري الإنجليزي؟"),
        ("la liga", "الدوري الإسباني", "هل يلعب في الدوري الإسباني؟"),
        ("serie a", "الدوري الإيطالي", "هل يلعب في الدوري الإيطالي؟"),
        ("bundesliga", "الدوري الألماني", "هل يلعب في الدوري الألماني؟"),
        ("ligue 1", "الدوري الفرنسي", "هل يلعب في الدوري الفرنسي؟"),
        ("mls", "الدوري الأمريكي", "هل يلعب في الدوري الأمريكي؟"),
        ("saudi pro league", "الدوري السعودي", "هل يلعب في الدوري السعودي؟"),
    ],
    "retired": [
        ("retired", "معتزل", "هل هو لاعب معتزل؟"),
    ],
}

NATIONALITIES = [
    ("argentina", "أرجنتيني"), ("portugal", "برتغالي"), ("egypt", "مصري"),
    ("france", "فرنسي"), ("norway", "نرويجي"), ("brazil", "برازيلي"),
    ("belgium", "بلجيكي"), ("england", "إنجليزي"), ("spain", "إسباني"),
    ("poland", "بولندي"), ("croatia", "كرواتي"), ("netherlands", "هولندي"),
    ("germany", "ألماني"), ("italy", "إيطالي"), ("uruguay", "أوروغواياني"),
    ("nigeria", "نيجيري"), ("morocco", "مغربي"), ("korea", "كوري"),
    ("scotland", "اسكتلندي"), ("slovenia", "سلوفيني"), ("georgia", "جورجي"),
]

CLUBS = [
    ("manchester city", "مانشستر سيتي"), ("liverpool", "ليفربول"),
    ("real madrid", "ريال مدريد"), ("barcelona", "برشلونة"),
    ("bayern munich", "بايرن ميونخ"), ("arsenal", "آرسنال"),
    ("manchester united", "مانشستر يونايتد"), ("tottenham", "توتنهام"),
    ("psg", "باريس سان جيرمان"), ("atletico madrid", "أتلتيكو مدريد"),
    ("inter milan", "إنتر ميلان"), ("ac milan", "ميلان"), ("napoli", "نابولي"),
    ("inter miami", "إنتر ميامي"), ("al nassr", "النصر"), ("al hilal", "الهلال"),
    ("al ittihad", "الاتحاد"),
]

AWARDS = [
    ("ballon dor", "الكرة الذهبية", "هل فاز بالكرة الذهبية؟"),
    ("world cup", "كأس العالم", "هل فاز بكأس العالم؟"),
    ("champions league", "دوري الأبطال", "هل فاز بدوري أبطال أوروبا؟"),
]

# Seed confidence per group; awards are only ever stored as true facts.
GROUP_CONFIDENCE = {"club": 0.9, "retired": 0.95, "award": 0.8}


@dataclass(frozen=True)
class SeedPlayer:
    name: str
    continent: str
    nationality: str
    position: str
    league: str
    club: str
    awards: tuple = ()
    retired: bool = False


UCL = "champions league"

PLAYERS = [
    SeedPlayer("Lionel Messi", "south america", "argentina", "forward", "mls", "inter miami", ("ballon dor", "world cup", UCL)),
    SeedPlayer("Cristiano Ronaldo", "europe", "portugal", "forward", "saudi pro league", "al nassr", ("ballon dor", UCL)),
    SeedPlayer("Kylian Mbappé", "europe", "france", "forward", "la liga", "real madrid", ("world cup",)),
    SeedPlayer("Erling Haaland", "europe", "norway", "forward", "premier league", "manchester city", (UCL,)),
    SeedPlayer("Mohamed Salah", "africa", "egypt", "forward", "premier league", "liverpool", (UCL,)),
    SeedPlayer("Kevin De Bruyne", "europe", "belgium", "midfielder", "premier league", "manchester city", (UCL,)),
    SeedPlayer("Jude Bellingham", "europe", "england", "midfielder", "la liga", "real madrid", (UCL,)),
    SeedPlayer("Vinícius Júnior", "south america", "brazil", "forward", "la liga", "real madrid", (UCL,)),
    SeedPlayer("Harry Kane", "europe", "england", "forward", "bundesliga", "bayern munich"),
    SeedPlayer("Robert Lewandowski", "europe", "poland", "forward", "la liga", "barcelona", (UCL,)),
    SeedPlayer("Neymar", "south america", "brazil", "forward", "saudi pro league", "al hilal", (UCL,)),
    SeedPlayer("Karim Benzema", "europe", "france", "forward", "saudi pro league", "al ittihad", ("ballon dor", UCL)),
    SeedPlayer("Luka Modrić", "europe", "croatia", "midfielder", "la liga", "real madrid", ("ballon dor", UCL)),
    SeedPlayer("Rodri", "europe", "spain", "midfielder", "premier league", "manchester city", (UCL,)),
    SeedPlayer("Bernardo Silva", "europe", "portugal", "midfielder", "premier league", "manchester city", (UCL,)),
    SeedPlayer("Bukayo Saka", "europe", "england", "forward", "premier league", "arsenal"),
    SeedPlayer("Martin Ødegaard", "europe", "norway", "midfielder", "premier league", "arsenal"),
    SeedPlayer("Virgil van Dijk", "europe", "netherlands", "defender", "premier league", "liverpool", (UCL,)),
    SeedPlayer("Rúben Dias", "europe", "portugal", "defender", "premier league", "manchester city", (UCL,)),
    SeedPlayer("Alisson Becker", "south america", "brazil", "goalkeeper", "premier league", "liverpool", (UCL,)),
    SeedPlayer("Thibaut Courtois", "europe", "belgium", "goalkeeper", "la liga", "real madrid", (UCL,)),
    SeedPlayer("Marc-André ter Stegen", "europe", "germany", "goalkeeper", "la liga", "barcelona"),
    SeedPlayer("Manuel Neuer", "europe", "germany", "goalkeeper", "bundesliga", "bayern munich", (UCL,)),
    SeedPlayer("Jamal Musiala", "europe", "germany", "midfielder", "bundesliga", "bayern munich"),
    SeedPlayer("Antoine Griezmann", "europe", "france", "forward", "la liga", "atletico madrid", ("world cup",)),
    SeedPlayer("Pedri", "europe", "spain", "midfielder", "la liga", "barcelona"),
    SeedPlayer("Gavi", "europe", "spain", "midfielder", "la liga", "barcelona"),
    SeedPlayer("Lamine Yamal", "europe", "spain", "forward", "la liga", "barcelona"),
    SeedPlayer("Rafael Leão", "europe", "portugal", "forward", "serie a", "ac milan"),
    SeedPlayer("Lautaro Martínez", "south america", "argentina", "forward", "serie a", "inter milan", ("world cup",)),
    SeedPlayer("Victor Osimhen", "africa", "nigeria", "forward", "serie a", "napoli"),
    SeedPlayer("Khvicha Kvaratskhelia", "europe", "georgia", "forward", "serie a", "napoli"),
    SeedPlayer("Federico Valverde", "south america", "uruguay", "midfielder", "la liga", "real madrid", ("world cup",)),
    SeedPlayer("Aurélien Tchouaméni", "europe", "france", "midfielder", "la liga", "real madrid"),
    SeedPlayer("Alejandro Garnacho", "south america", "argentina", "forward", "premier league", "manchester united"),
    SeedPlayer("Bruno Fernandes", "europe", "portugal", "midfielder", "premier league", "manchester united"),
    SeedPlayer("Marcus Rashford", "europe", "england", "forward", "premier league", "manchester united"),
    SeedPlayer("Son Heung-min", "asia", "korea", "forward", "premier league", "tottenham"),
    SeedPlayer("Declan Rice", "europe", "england", "midfielder", "premier league", "arsenal"),
    SeedPlayer("William Saliba", "europe", "france", "defender", "premier league", "arsenal"),
    SeedPlayer("Trent Alexander-Arnold", "europe", "england", "defender", "premier league", "liverpool", (UCL,)),
    SeedPlayer("Andrew Robertson", "europe", "scotland", "defender", "premier league", "liverpool", (UCL,)),
    SeedPlayer("Antonio Rüdiger", "europe", "germany", "defender", "la liga", "real madrid", (UCL,)),
    SeedPlayer("Ronald Araújo", "south america", "uruguay", "defender", "la liga", "barcelona"),
    SeedPlayer("Jan Oblak", "europe", "slovenia", "goalkeeper", "la liga", "atletico madrid"),
    SeedPlayer("Gianluigi Donnarumma", "europe", "italy", "goalkeeper", "ligue 1", "psg"),
    SeedPlayer("Ousmane Dembélé", "europe", "france", "forward", "ligue 1", "psg", ("world cup",)),
    SeedPlayer("Achraf Hakimi", "africa", "morocco", "defender", "ligue 1", "psg"),
    SeedPlayer("Marquinhos", "south america", "brazil", "defender", "ligue 1", "psg", (UCL,)),
]


@dataclass(frozen=True)
class SeedAttribute:
    group: str
    value: str
    label: str
    question: str
    is_exclusive: bool = True


def question_for(group: str, label: str) -> str:
    if group == "nationality":
        return f"هل هو {label}؟"
    if group == "club":
        return f"هل يلعب في نادي {label}؟"
    if group == "award":
        return f"هل فاز بـ {label}؟"
    return f"هل هو {label}؟"


def build_attributes() -> list[SeedAttribute]:
    attrs = []
    for group, items in ATTRIBUTE_SETS.items():
        attrs.extend(SeedAttribute(group, value, label, question) for value, label, question in items)
    attrs.extend(SeedAttribute("nationality", v, l, question_for("nationality", l)) for v, l in NATIONALITIES)
    attrs.extend(SeedAttribute("club", v, l, question_for("club", l)) for v, l in CLUBS)
    attrs.extend(SeedAttribute("award", v, l, q, is_exclusive=False) for v, l, q in AWARDS)
    return attrs


def player_facts(player: SeedPlayer, attribute_ids: dict) -> list[tuple[int, bool, float]]:
    """(attribute_id, value, confidence) rows for one player.

    Exclusive groups get a full true/false row; awards only their true facts.
    """
    chosen = {
        "continent": player.continent,
        "position": player.position,
        "league": player.league,
        "nationality": player.nationality,
        "club": player.club,
    }
    awards = {normalize(a) for a in player.awards}
    rows = []
    for (group, value), attribute_id in attribute_ids.items():
        confidence = GROUP_CONFIDENCE.get(group, 1.0)
        if group == "award":
            if value in awards:
                rows.append((attribute_id, True, confidence))
        elif group == "retired":
            rows.append((attribute_id, bool(player.retired), confidence))
        elif group in chosen:
            rows.append((attribute_id, normalize(chosen[group]) == value, confidence))
    return rows


def seed_knowledge(store: KnowledgeStore, players=None) -> dict:
    """Idempotently load attributes, questions, players and facts. Returns store counts."""
    attribute_ids: dict[tuple[str, str], int] = {}
    for attr in build_attributes():
        record = store.upsert_attribute(
            key=attr.group,
            value=attr.value,
            label=attr.label,
            group=attr.group,
            is_exclusive=attr.is_exclusive,
            source="seed",
        )
        if record is None:
            continue
        attribute_ids[(attr.group, normalize(attr.value))] = record.id
        store.upsert_question(record.id, attr.question)

    facts = []
    for player in players if players is not None else PLAYERS:
        entity = store.upsert_entity(player.name)
        if entity is None:
            continue
        facts.extend((entity.id, a, v, c) for a, v, c in player_facts(player, attribute_ids))
    store.upsert_facts(facts, source="seed", overwrite=True)
    return store.counts()
