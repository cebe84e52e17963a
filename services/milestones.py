"""Default milestone generation for newly created projects."""

from __future__ import annotations

import logging
import re
from datetime import date, timedelta

from pydantic import BaseModel

from core.clock import utc_today
from core.data.store import Store, dump_json
from core.models.results import MilestoneGenerationResult

logger = logging.getLogger(__name__)


class MilestoneTemplate(BaseModel):
    title: str
    description: str
    days: int
    deliverables: list[str]


def _t(title: str, description: str, days: int, *deliverables: str) -> MilestoneTemplate:
    return MilestoneTemplate(title=title, description=description, days=days, deliverables=list(deliverables))


DEFAULT_MILESTONES: dict[str, list[MilestoneTemplate]] = {
    "simple-site": [
        _t("Discovery & Planning", "Requirements gathering and project planning", 3,
           "Project brief", "Sitemap", "Content outline"),
        _t("Design & Development", "Visual design, development and content integration", 10,
           "Design mockups", "Responsive site build", "Content integration"),
        _t("Testing & Launch", "Quality assurance, client review and deployment", 14,
           "Cross-browser testing", "Mobile testing", "Live deployment"),
    ],
    "business-site": [
        _t("Discovery", "Business analysis and requirements definition", 5,
           "Discovery document", "Competitor analysis", "Feature requirements"),
        _t("Design", "Wireframes and visual design", 12,
           "Wireframes", "Style guide", "Design mockups"),
        _t("Development", "Frontend development and CMS setup", 22,
           "Responsive build", "CMS configuration", "Contact forms"),
        _t("Content Integration", "Content population and SEO", 27,
           "Page content", "SEO setup", "Image optimization"),
        _t("Testing & Launch", "Testing, training and deployment", 32,
           "QA testing", "Client training", "Live deployment"),
    ],
    "ecommerce-site": [
        _t("Discovery & Planning", "Catalog analysis and platform selection", 7,
           "Requirements document", "Platform recommendation", "Product structure"),
        _t("Design", "Store, product page and checkout design", 14,
           "Store wireframes", "Product page designs", "Checkout flow"),
        _t("Development", "Platform setup and core functionality", 28,
           "Store setup", "Payment integration", "Shipping configuration"),
        _t("Product Setup", "Product import and categorization", 35,
           "Product catalog", "Inventory system", "Category structure"),
        _t("Testing & Launch", "Order testing and production launch", 45,
           "Order flow testing", "Payment testing", "Store launch"),
    ],
    "web-app": [
        _t("Discovery & Architecture", "Requirements analysis and technical architecture", 10,
           "Technical spec", "Architecture diagram", "Project roadmap"),
        _t("UI/UX Design", "User flows, wireframes and interface design", 20,
           "User flows", "Wireframes", "UI design system"),
        _t("Core Development", "Backend, API and core functionality", 40,
           "Backend API", "Database schema", "Core features"),
        _t("Frontend Integration", "Frontend development and API integration", 50,
           "Frontend application", "API integration", "User authentication"),
        _t("Testing & Deployment", "Testing, fixes and production deployment", 60,
           "Test coverage", "Bug fixes", "Production deployment"),
    ],
    "maintenance": [
        _t("Month 1 - Setup", "Audit, monitoring and maintenance schedule", 30,
           "Site audit", "Monitoring setup", "Maintenance schedule"),
        _t("Month 2 - Optimization", "Performance and security updates", 60,
           "Performance report", "Security patches", "Optimization updates"),
        _t("Month 3 - Review", "Quarterly review and planning", 90,
           "Quarterly report", "Next period plan", "Recommendations"),
    ],
    "other": [
        _t("Phase 1 - Planning", "Requirements gathering and project planning", 7,
           "Project plan", "Requirements document"),
        _t("Phase 2 - Execution", "Primary design and development work", 21,
           "Design deliverables", "Development work"),
        _t("Phase 3 - Completion", "Final review, testing and handoff", 28,
           "Final deliverables", "Testing", "Project handoff"),
    ],
}

# Keyword -> template set, checked in order when there is no exact match
TYPE_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("simple", "simple-site"),
    ("landing", "simple-site"),
    ("personal", "simple-site"),
    ("business", "business-site"),
    ("corporate", "business-site"),
    ("portfolio", "business-site"),
    ("ecommerce", "ecommerce-site"),
    ("e-commerce", "ecommerce-site"),
    ("shop", "ecommerce-site"),
    ("store", "ecommerce-site"),
    ("webapp", "web-app"),
    ("application", "web-app"),
    ("dashboard", "web-app"),
    ("saas", "web-app"),
    ("retainer", "maintenance"),
    ("support", "maintenance"),
)


def normalize_project_type(project_type: str | None) -> str:
    if not project_type:
        return "other"
    normalized = re.sub(r"[_\s]+", "-", project_type.strip().lower())
    normalized = re.sub(r"[^a-z0-9-]", "", normalized)
    if normalized in DEFAULT_MILESTONES:
        return normalized
    for keyword, mapped in TYPE_KEYWORDS:
        if keyword in normalized:
            return mapped
    return "other"


class MilestoneGenerator:
    def __init__(self, store: Store) -> None:
        self._store = store

    def generate_default_milestones(
        self,
        project_id: int,
        project_type: str | None,
        start_date: date | None = None,
        skip_if_exists: bool = True,
    ) -> MilestoneGenerationResult:
        """Create template milestones plus one task per deliverable."""
        if skip_if_exists:
            existing = self._store.fetch_value(
                "SELECT COUNT(*) FROM milestones WHERE project_id = ?", (project_id,), default=0
            )
            if existing:
                logger.info("Project %d already has %d milestone(s); not generating", project_id, existing)
                return MilestoneGenerationResult(skipped=True)

        kind = normalize_project_type(project_type)
        start = start_date or utc_today()
        result = MilestoneGenerationResult()

        with self._store.transaction():
            for order, template in enumerate(DEFAULT_MILESTONES[kind], start=1):
                due = (start + timedelta(days=template.days)).isoformat()
                milestone_id = self._store.insert(
                    """INSERT INTO milestones
                       (project_id, title, description, due_date, deliverables, sort_order)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (project_id, template.title, template.description, due,
                     dump_json(template.deliverables), order),
                )
                result.milestones_created += 1
                for task_order, deliverable in enumerate(template.deliverables, start=1):
                    self._store.execute(
                        """INSERT INTO project_tasks
                           (project_id, milestone_id, title, due_date, sort_order)
                           VALUES (?, ?, ?, ?, ?)""",
                        (project_id, milestone_id, deliverable, due, task_order),
                    )
                    result.tasks_created += 1

        logger.info(
            "Generated %d milestone(s) and %d task(s) for project %d (%s)",
            result.milestones_created, result.tasks_created, project_id, kind,
        )
        return result
