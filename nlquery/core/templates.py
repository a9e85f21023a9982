"""Catalogue of the named query templates the classifier may choose from."""

from __future__ import annotations

from dataclasses import dataclass, field

# Argument kinds
ENTITY = "entity"  # unscoped free text, resolved through the cascade
COLUMN = "column"  # free text scoped to one column
STATUS = "status"
REGION = "region"
PROJECT_TYPE = "project_type"
NUMBER = "number"
DATE = "date"
TIME = "time"
SIZE = "size"
LIMIT = "limit"
ORDER = "order"

DIRECTIVE_KINDS = frozenset({LIMIT, ORDER})

# Template kinds
LIST = "list"
RANKING = "ranking"
BREAKDOWN = "breakdown"

FEE_COLUMN = "Fee"
WIN_COLUMN = "PercentWin"
DATE_COLUMN = "ConstStartDate"
TITLE_COLUMN = "Title"

SIZE_CLASSES = ("Micro", "Small", "Medium", "Large", "Mega")
SIZE_GROUP = "project_size"

DEFAULT_LIST_LIMIT = 100
MAX_LIMIT = 1000


@dataclass(frozen=True, slots=True)
class ArgumentSpec:
    name: str
    kind: str
    column: str | None = None
    operator: str | None = None
    fallback_column: str | None = None
    description: str = ""

    @property
    def is_directive(self) -> bool:
        return self.kind in DIRECTIVE_KINDS


@dataclass(frozen=True, slots=True)
class QueryTemplate:
    name: str
    kind: str
    description: str
    required: tuple[str, ...] = ()
    required_any: tuple[str, ...] = ()
    group_by: str | None = None
    sort_column: str = FEE_COLUMN
    sort_descending: bool = True
    default_limit: int | None = DEFAULT_LIST_LIMIT
    signals: tuple[str, ...] = field(default_factory=tuple)


FILTER_ARGUMENTS: tuple[ArgumentSpec, ...] = (
    ArgumentSpec("keyword", ENTITY, fallback_column=TITLE_COLUMN, description="free-text entity or keyword"),
    ArgumentSpec("client", COLUMN, column="Client", description="client name"),
    ArgumentSpec("company", COLUMN, column="Company", description="company name"),
    ArgumentSpec("poc", COLUMN, column="PointOfContact", description="point of contact"),
    ArgumentSpec("category", COLUMN, column="RequestCategory", description="request category"),
    ArgumentSpec("state_code", COLUMN, column="State", description="state name or code"),
    ArgumentSpec("city", COLUMN, column="City", description="city"),
    ArgumentSpec("division", COLUMN, column="Division", description="division"),
    ArgumentSpec("department", COLUMN, column="Department", description="department"),
    ArgumentSpec("status", STATUS, column="StatusChoice", description="status or status group"),
    ArgumentSpec("region", REGION, column="Region", description="region or region alias"),
    ArgumentSpec("project_type", PROJECT_TYPE, column="ProjectType", description="project type"),
    ArgumentSpec("min_fee", NUMBER, column=FEE_COLUMN, operator=">=", description="minimum fee"),
    ArgumentSpec("max_fee", NUMBER, column=FEE_COLUMN, operator="<=", description="maximum fee"),
    ArgumentSpec("min_win", NUMBER, column=WIN_COLUMN, operator=">=", description="minimum win %"),
    ArgumentSpec("max_win", NUMBER, column=WIN_COLUMN, operator="<=", description="maximum win %"),
    ArgumentSpec("size", SIZE, column=FEE_COLUMN, description="Micro|Small|Medium|Large|Mega, relative to the fee distribution"),
    ArgumentSpec("start_date", DATE, column=DATE_COLUMN, operator=">=", description="YYYY-MM-DD"),
    ArgumentSpec("end_date", DATE, column=DATE_COLUMN, operator="<=", description="YYYY-MM-DD"),
    ArgumentSpec("time_reference", TIME, column=DATE_COLUMN, description="phrase like 'last 6 months'"),
    ArgumentSpec("limit", LIMIT, description="maximum rows"),
    ArgumentSpec("order_by", ORDER, description="fee|win|date|title, optionally asc/desc"),
)

ARGUMENTS_BY_NAME = {spec.name: spec for spec in FILTER_ARGUMENTS}

TEMPLATES: tuple[QueryTemplate, ...] = (
    QueryTemplate(
        "get_projects_by_combined_filters",
        LIST,
        "Projects matching any combination of filters (status, category, region, fee, dates...).",
        signals=("projects", "with", "and", "filter", "where"),
    ),
    QueryTemplate(
        "search_projects_by_keyword",
        LIST,
        "Projects mentioning a free-text keyword, client, agency or topic.",
        required=("keyword",),
        signals=("about", "mention", "related", "keyword", "search", "for"),
    ),
    QueryTemplate(
        "get_projects_by_client",
        LIST,
        "Projects for one client.",
        required=("client",),
        signals=("client", "clients", "customer", "for"),
    ),
    QueryTemplate(
        "get_projects_by_status",
        LIST,
        "Projects in a status or status group (open, won, lost, pending...).",
        required=("status",),
        signals=("status", "open", "won", "lost", "pending", "active", "closed", "submitted"),
    ),
    QueryTemplate(
        "get_projects_by_category",
        LIST,
        "Projects in a request category.",
        required=("category",),
        signals=("category", "categories", "sector", "segment"),
    ),
    QueryTemplate(
        "get_projects_by_state",
        LIST,
        "Projects in a state.",
        required=("state_code",),
        signals=("state", "in"),
    ),
    QueryTemplate(
        "get_projects_by_project_type",
        LIST,
        "Projects of a project type.",
        required=("project_type",),
        signals=("type", "types", "kind"),
    ),
    QueryTemplate(
        "get_projects_by_poc",
        LIST,
        "Projects led by a point of contact.",
        required=("poc",),
        signals=("poc", "contact", "led", "managed", "owner"),
    ),
    QueryTemplate(
        "get_projects_by_fee_range",
        LIST,
        "Projects whose fee falls in a range.",
        required_any=("min_fee", "max_fee"),
        signals=("fee", "fees", "over", "under", "above", "below", "between", "million", "budget"),
    ),
    QueryTemplate(
        "get_projects_by_win_range",
        LIST,
        "Projects whose win probability falls in a range.",
        required_any=("min_win", "max_win"),
        sort_column=WIN_COLUMN,
        signals=("win", "probability", "chance", "likely", "percent"),
    ),
    QueryTemplate(
        "get_largest_projects",
        RANKING,
        "Largest projects by fee.",
        default_limit=10,
        signals=("largest", "biggest", "top", "highest", "most", "expensive"),
    ),
    QueryTemplate(
        "get_top_clients",
        RANKING,
        "Clients ranked by total fee.",
        group_by="Client",
        default_limit=5,
        signals=("top", "clients", "best", "biggest", "customers"),
    ),
    QueryTemplate(
        "get_status_breakdown",
        BREAKDOWN,
        "Project counts and fees per status.",
        group_by="StatusChoice",
        default_limit=None,
        signals=("breakdown", "status", "distribution", "per", "by"),
    ),
    QueryTemplate(
        "get_category_breakdown",
        BREAKDOWN,
        "Project counts and fees per request category.",
        group_by="RequestCategory",
        default_limit=None,
        signals=("breakdown", "category", "categories", "distribution", "per"),
    ),
    QueryTemplate(
        "get_size_distribution",
        BREAKDOWN,
        "Project counts and fees per size class (Micro to Mega by fee percentile).",
        group_by=SIZE_GROUP,
        default_limit=None,
        signals=("size", "sizes", "distribution", "mega", "micro", "small", "large"),
    ),
    QueryTemplate(
        "compare_states",
        BREAKDOWN,
        "Project counts and fees per state.",
        group_by="State",
        default_limit=None,
        signals=("compare", "states", "state", "versus", "vs"),
    ),
)

TEMPLATES_BY_NAME = {template.name: template for template in TEMPLATES}


def get_template(name: str) -> QueryTemplate | None:
    return TEMPLATES_BY_NAME.get(str(name).strip())


def describe_catalogue(templates: tuple[QueryTemplate, ...] | list[QueryTemplate] = TEMPLATES) -> str:
    """Render templates and arguments as plain text for the classifier prompt."""

    lines = ["Templates:"]
    for template in templates:
        requirement = ""
        if template.required:
            requirement = f" (requires {', '.join(template.required)})"
        elif template.required_any:
            requirement = f" (requires one of {', '.join(template.required_any)})"
        lines.append(f"- {template.name}: {template.description}{requirement}")
    lines.append("Arguments (all optional filters apply to every template):")
    for spec in FILTER_ARGUMENTS:
        lines.append(f"- {spec.name}: {spec.description}")
    return "\n".join(lines)
