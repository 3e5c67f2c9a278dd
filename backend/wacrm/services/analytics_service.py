"""
统计报表: 漏斗 / 来源 / 活动 / 转化 / 仪表盘
所有统计都限定在单个 WhatsApp 会话 (session_id) 内
"""
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select, func

from wacrm.models.activity import Activity, ActivityType
from wacrm.models.contact import Contact
from wacrm.models.lead_status import LeadStatus, CONVERTED_STATUS_NAMES
from wacrm.models.message import Message, DIRECTION_INCOMING, DIRECTION_OUTGOING

UNASSIGNED_STAGE = "Unassigned"


def _percentage(part: int, whole: int, digits: int = 1) -> float:
    if not whole:
        return 0.0
    return round(part * 100.0 / whole, digits)


class AnalyticsService:

    def __init__(self, session: Session):
        self.session = session

    def _statuses(self, session_id: str) -> List[LeadStatus]:
        return self.session.exec(
            select(LeadStatus)
            .where(LeadStatus.session_id == session_id)
            .order_by(LeadStatus.order_index, LeadStatus.id)
        ).all()

    def _count_by_status(self, session_id: str) -> Dict[Optional[int], int]:
        rows = self.session.exec(
            select(Contact.lead_status_id, func.count(Contact.id))
            .where(Contact.session_id == session_id)
            .group_by(Contact.lead_status_id)
        ).all()
        return {status_id: count for status_id, count in rows}

    def total_contacts(self, session_id: str) -> int:
        return self.session.exec(
            select(func.count(Contact.id)).where(Contact.session_id == session_id)
        ).one()

    # ==================== 漏斗 ====================

    def funnel(self, session_id: str) -> Dict[str, Any]:
        """
        各阶段人数、占比和阶段间转化率

        没有阶段 (或阶段已被删除) 的联系人计入 "Unassigned"，
        因此各阶段人数之和恒等于会话联系人总数
        """
        statuses = self._statuses(session_id)
        counts = self._count_by_status(session_id)
        total = sum(counts.values())

        stages = []
        known_ids = set()
        for status in statuses:
            known_ids.add(status.id)
            stages.append({
                "id": status.id,
                "name": status.name,
                "order": status.order_index,
                "color": status.color,
                "count": counts.get(status.id, 0),
            })

        unassigned = sum(count for status_id, count in counts.items() if status_id not in known_ids)
        if unassigned:
            stages.append({
                "id": None,
                "name": UNASSIGNED_STAGE,
                "order": None,
                "color": "#9ca3af",
                "count": unassigned,
            })

        cumulative = 0
        for stage in stages:
            stage["percentageOfTotal"] = _percentage(stage["count"], total)
            # 相对于前面所有阶段累计人数
            stage["conversionRate"] = _percentage(stage["count"], cumulative) if cumulative else None
            cumulative += stage["count"]

        return {"funnel": stages, "total": total}

    def funnel_stages(self, session_id: str, preview: int = 20) -> List[Dict[str, Any]]:
        """每个阶段附最近更新的前 preview 个联系人"""
        counts = self._count_by_status(session_id)
        stages = []
        for status in self._statuses(session_id):
            contacts = self.session.exec(
                select(Contact)
                .where(Contact.session_id == session_id, Contact.lead_status_id == status.id)
                .order_by(Contact.updated_at.desc())
                .limit(preview)
            ).all()
            stages.append({
                "id": status.id,
                "name": status.name,
                "order": status.order_index,
                "color": status.color,
                "contactCount": counts.get(status.id, 0),
                "contacts": [
                    {"id": c.id, "name": c.name, "phone": c.phone, "source": c.source, "createdAt": c.created_at}
                    for c in contacts
                ],
            })
        return stages

    # ==================== 来源 ====================

    def sources(self, session_id: str) -> Dict[str, Any]:
        rows = self.session.exec(
            select(Contact.source, func.count(Contact.id))
            .where(Contact.session_id == session_id)
            .group_by(Contact.source)
            .order_by(func.count(Contact.id).desc())
        ).all()
        total = sum(count for _, count in rows)
        return {
            "sources": [
                {"source": source, "count": count, "percentage": _percentage(count, total)}
                for source, count in rows
            ],
            "total": total,
        }

    # ==================== 活动 ====================

    def activities_summary(self, session_id: str, start_date: Optional[datetime] = None,
                           end_date: Optional[datetime] = None) -> Dict[str, Any]:
        conditions = [Activity.session_id == session_id]
        if start_date:
            conditions.append(Activity.activity_date >= start_date)
        if end_date:
            conditions.append(Activity.activity_date <= end_date)

        activities = self.session.exec(select(Activity).where(*conditions)).all()
        types = self.session.exec(select(ActivityType).where(ActivityType.session_id == session_id)).all()

        by_type_count: Dict[Optional[int], int] = {}
        by_day: Dict[str, int] = {}
        by_contact: Dict[int, int] = {}
        for activity in activities:
            by_type_count[activity.activity_type_id] = by_type_count.get(activity.activity_type_id, 0) + 1
            day = activity.activity_date.date().isoformat()
            by_day[day] = by_day.get(day, 0) + 1
            by_contact[activity.contact_id] = by_contact.get(activity.contact_id, 0) + 1

        total = len(activities)
        by_type = sorted(
            (
                {
                    "name": t.name,
                    "icon": t.icon,
                    "color": t.color,
                    "count": by_type_count.get(t.id, 0),
                    "percentage": _percentage(by_type_count.get(t.id, 0), total),
                }
                for t in types
            ),
            key=lambda item: item["count"],
            reverse=True,
        )

        top_contacts = []
        for contact_id, count in sorted(by_contact.items(), key=lambda kv: kv[1], reverse=True)[:10]:
            contact = self.session.get(Contact, contact_id)
            if contact is not None:
                top_contacts.append({"id": contact.id, "name": contact.name, "phone": contact.phone, "activityCount": count})

        next_actions = []
        for activity in sorted(
            (a for a in activities if a.next_action_date is not None),
            key=lambda a: a.next_action_date,
        )[:20]:
            contact = self.session.get(Contact, activity.contact_id)
            next_actions.append({
                "id": activity.id,
                "title": activity.title,
                "nextAction": activity.next_action,
                "nextActionDate": activity.next_action_date,
                "contactName": contact.name if contact else None,
                "contactPhone": contact.phone if contact else None,
            })

        return {
            "totalActivities": total,
            "byType": by_type,
            "timeline": [{"date": d, "count": c} for d, c in sorted(by_day.items(), reverse=True)[:30]],
            "topContacts": top_contacts,
            "nextActionsDue": next_actions,
        }

    # ==================== 转化 ====================

    def _converted_status_ids(self, session_id: str) -> set:
        return set(self.session.exec(
            select(LeadStatus.id).where(
                LeadStatus.session_id == session_id,
                LeadStatus.name.in_(CONVERTED_STATUS_NAMES),
            )
        ).all())

    def conversion(self, session_id: str, period_days: int = 30) -> Dict[str, Any]:
        converted_ids = self._converted_status_ids(session_id)
        contacts = self.session.exec(select(Contact).where(Contact.session_id == session_id)).all()

        total = len(contacts)
        converted = sum(1 for c in contacts if c.lead_status_id in converted_ids)

        since = datetime.utcnow() - timedelta(days=period_days)
        daily: Dict[str, Dict[str, int]] = OrderedDict()
        by_source: Dict[str, Dict[str, int]] = {}
        for contact in sorted(contacts, key=lambda c: c.created_at, reverse=True):
            is_converted = contact.lead_status_id in converted_ids
            source = by_source.setdefault(contact.source, {"total": 0, "converted": 0})
            source["total"] += 1
            source["converted"] += int(is_converted)
            if contact.created_at >= since:
                day = daily.setdefault(contact.created_at.date().isoformat(), {"newContacts": 0, "converted": 0})
                day["newContacts"] += 1
                day["converted"] += int(is_converted)

        return {
            "overall": {
                "totalContacts": total,
                "totalConverted": converted,
                "conversionRate": _percentage(converted, total, 2),
            },
            "bySource": [
                {
                    "source": name,
                    "total": stats["total"],
                    "converted": stats["converted"],
                    "conversionRate": _percentage(stats["converted"], stats["total"], 2),
                }
                for name, stats in by_source.items()
            ],
            "timeline": [
                {
                    "date": day,
                    "newContacts": stats["newContacts"],
                    "converted": stats["converted"],
                    "conversionRate": _percentage(stats["converted"], stats["newContacts"], 2),
                }
                for day, stats in daily.items()
            ],
            "periodDays": period_days,
        }

    # ==================== 仪表盘 ====================

    def dashboard(self, session_id: str) -> Dict[str, Any]:
        counts = self._count_by_status(session_id)
        lead_statuses = [
            {"name": s.name, "color": s.color, "count": counts.get(s.id, 0)}
            for s in self._statuses(session_id)
        ]

        recent = self.session.exec(
            select(Activity, ActivityType, Contact)
            .join(ActivityType, Activity.activity_type_id == ActivityType.id)
            .join(Contact, Activity.contact_id == Contact.id)
            .where(Activity.session_id == session_id)
            .order_by(Activity.activity_date.desc())
            .limit(10)
        ).all()

        direction_counts = dict(self.session.exec(
            select(Message.direction, func.count(Message.id))
            .where(Message.session_id == session_id)
            .group_by(Message.direction)
        ).all())

        today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        upcoming = self.session.exec(
            select(Activity, Contact)
            .join(Contact, Activity.contact_id == Contact.id)
            .where(
                Activity.session_id == session_id,
                Activity.next_action_date >= today,
                Activity.next_action_date <= today + timedelta(days=7),
            )
            .order_by(Activity.next_action_date)
            .limit(10)
        ).all()

        return {
            "totalContacts": sum(counts.values()),
            "leadStatuses": lead_statuses,
            "sources": self.sources(session_id)["sources"],
            "recentActivities": [
                {
                    "id": activity.id,
                    "title": activity.title,
                    "activityDate": activity.activity_date,
                    "typeName": activity_type.name,
                    "typeIcon": activity_type.icon,
                    "contactName": contact.name,
                }
                for activity, activity_type, contact in recent
            ],
            "messageStats": {
                "total": sum(direction_counts.values()),
                "incoming": direction_counts.get(DIRECTION_INCOMING, 0),
                "outgoing": direction_counts.get(DIRECTION_OUTGOING, 0),
            },
            "upcomingActions": [
                {
                    "id": activity.id,
                    "title": activity.title,
                    "nextAction": activity.next_action,
                    "nextActionDate": activity.next_action_date,
                    "contactName": contact.name,
                    "contactPhone": contact.phone,
                }
                for activity, contact in upcoming
            ],
        }
