from dataclasses import dataclass, field


@dataclass(frozen=True)
class CategoryNode:
    path: str
    label: str
    children: tuple["CategoryNode", ...] = field(default_factory=tuple)


CATEGORY_TAXONOMY: tuple[CategoryNode, ...] = (
    CategoryNode("electronics", "Electronics", (
        CategoryNode("electronics/apple-products", "Apple Products"),
        CategoryNode("electronics/camera", "Camera"),
        CategoryNode("electronics/car-vehicle-electronics", "Car & Vehicle Electronics"),
        CategoryNode("electronics/cell-phone-accessories", "Cell Phone Accessories"),
        CategoryNode("electronics/cell-phone-chargers-power-adapters", "Cell Phone Chargers & Power Adapters"),
        CategoryNode("electronics/computers-accessories", "Computers & Accessories"),
        CategoryNode("electronics/computers-tablets", "Computers & Tablets"),
        CategoryNode("electronics/earbuds-accessories", "Earbuds & Accessories"),
        CategoryNode("electronics/headphones", "Headphones"),
        CategoryNode("electronics/health-monitor", "Health Monitor"),
        CategoryNode("electronics/musical-instruments", "Musical Instruments"),
        CategoryNode("electronics/portable-power-station", "Portable Power Station"),
        CategoryNode("electronics/portable-speakers", "Portable Speakers"),
        CategoryNode("electronics/projector", "Projector"),
        CategoryNode("electronics/robot-vacuum-cleaner", "Robot Vacuum Cleaner"),
        CategoryNode("electronics/smart-home", "Smart Home"),
        CategoryNode("electronics/smartwatches", "Smartwatches"),
        CategoryNode("electronics/tools-home-improvement", "Tools & Home Improvement"),
        CategoryNode("electronics/tv", "TV"),
        CategoryNode("electronics/video-game-consoles-accessories", "Video Game Consoles & Accessories"),
        CategoryNode("electronics/virtual-reality", "Virtual Reality"),
    )),
    CategoryNode("lifestyle", "Lifestyle", (
        CategoryNode("lifestyle/fashion", "Fashion"),
        CategoryNode("lifestyle/furniture", "Furniture"),
    )),
    CategoryNode("pet-supplies", "Pet Supplies", (
        CategoryNode("pet-supplies/dog", "Dog"),
    )),
    CategoryNode("toys-games", "Toys & Games"),
    CategoryNode("travel", "Travel"),
)


def automation_nodes() -> list[CategoryNode]:
    """Every node, parents first, in taxonomy order."""
    out = []
    for node in CATEGORY_TAXONOMY:
        out.append(node)
        out.extend(node.children)
    return out


def category_label(path: str) -> str:
    for node in automation_nodes():
        if node.path == path:
            return node.label
    leaf = path.strip("/").split("/")[-1] if path else ""
    if not leaf:
        return path
    return " ".join(word.capitalize() for word in leaf.replace("-", " ").split())


def keyword_for_path(path: str) -> str:
    return path.strip("/").split("/")[-1].replace("-", " ").strip()


def category_matches(category: str, prefix: str) -> bool:
    """True when category equals prefix or sits below it."""
    return category == prefix or category.startswith(f"{prefix}/")
