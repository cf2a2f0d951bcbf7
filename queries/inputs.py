#!/usr/bin/env python3
"""
Example Queries for the Activities cube

Replace these with your own; run.py writes one CSV per query.

Query Format:
{
    "measures": [<measure>, ...],
    "dimensions": [<dimension>, ...],
    "segments": [<segment>, ...],
    "filters": [{"member": <dimension>, "operator": <op>, "values": [...]}],
    "timeDimensions": [{"dimension": "Activities.timestamp",
                        "dateRange": [<start>, <end>],
                        "granularity": <granularity>}],
    "order": {<member>: "asc|desc"},
    "limit": <n>
}

Filter Operators:
- "equals" / "notEquals"
- "in" / "notIn"
- "set" / "notSet"
- "inDateRange" (time dimension only)

Granularities: day, week, month, quarter, year

Members may be written with or without the "Activities." prefix. Lookup
dimensions keep their own prefix ("Members.logo_url").
"""

queries = [
    # Query 1: Contributions per contributor for one tenant in a week
    {
        "measures": ["Activities.metric_contributor_contributions"],
        "dimensions": ["Activities.memberId", "Activities.username", "Members.logo_url"],
        "filters": [
            {"member": "Activities.activity_tenant_id", "operator": "in", "values": ["tenant-1"]},
        ],
        "timeDimensions": [
            {"dimension": "Activities.timestamp", "dateRange": ["2023-05-04", "2023-05-10"]},
        ],
        "order": {"Activities.metric_contributor_contributions": "desc"},
        "limit": 20,
    },

    # Query 2: Total contributions in the same week
    {
        "measures": ["Activities.metric_contributor_contributions"],
        "filters": [
            {"member": "Activities.activity_tenant_id", "operator": "equals", "values": ["tenant-1"]},
        ],
        "timeDimensions": [
            {"dimension": "Activities.timestamp", "dateRange": ["2023-05-04", "2023-05-10"]},
        ],
    },

    # Query 3: Issues opened and closed per month
    {
        "measures": ["Activities.count"],
        "dimensions": ["Activities.type"],
        "segments": ["Activities.issues_only"],
        "timeDimensions": [
            {"dimension": "Activities.timestamp", "dateRange": ["2023-01-01", "2023-12-31"],
             "granularity": "month"},
        ],
        "order": {"Activities.timestamp.month": "asc"},
    },

    # Query 4: Comments per member in a year
    {
        "measures": ["Activities.count"],
        "dimensions": ["Activities.memberId"],
        "segments": ["Activities.comment_activites"],
        "timeDimensions": [
            {"dimension": "Activities.timestamp", "dateRange": ["2023-01-01", "2023-12-31"],
             "granularity": "year"},
        ],
    },

    # Query 5: Star count (derived) per day
    {
        "measures": ["Activities.starActivity", "Activities.unstarActivity", "Activities.starCount"],
        "timeDimensions": [
            {"dimension": "Activities.timestamp", "dateRange": ["2023-05-01", "2023-05-31"],
             "granularity": "day"},
        ],
    },

    # Query 6: Pull requests by contributors without a member id
    {
        "measures": ["Activities.metric_contributor_prs"],
        "dimensions": ["Activities.platform"],
        "filters": [
            {"member": "Activities.memberId", "operator": "notSet"},
        ],
    },
]
