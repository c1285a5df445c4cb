from datetime import datetime

from rhythmhub.config import settings
from rhythmhub.database import Chart, Level, LevelDownload, LevelTag, Record
from rhythmhub.database.level_download import process_level_download
from rhythmhub.router import levels as levels_router

from .factories import add_package, add_record, auth_headers, create_level, get_chart

import pytest
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession


@pytest.fixture
async def catalog(session, alice):
    """alice 的四个谱面：公开、未发布、被审查、仅国内审查"""
    return {
        "public": await create_level(
            session,
            alice,
            "alice.one",
            featured=True,
            tags=("piano", "hard"),
            description="A calm piano song",
            creation_date=datetime(2024, 1, 1),
        ),
        "draft": await create_level(session, alice, "alice.two", published=False, creation_date=datetime(2024, 1, 2)),
        "censored": await create_level(
            session, alice, "alice.three", censored="copyright", creation_date=datetime(2024, 1, 3)
        ),
        "ccp": await create_level(
            session, alice, "alice.four", censored="ccp", charts=(("extreme", 14),), creation_date=datetime(2024, 1, 4)
        ),
    }


def _uids(resp) -> list[str]:
    return [level["uid"] for level in resp.json()]


class TestListLevels:
    async def test_public_listing(self, client, catalog):
        resp = await client.get("/levels")
        assert resp.status_code == 200
        assert sorted(_uids(resp)) == ["alice.four", "alice.one"]
        assert resp.headers["Cache-Control"] == "public, max-age=60"
        assert resp.headers["X-Total-Entries"] == "2"
        assert resp.headers["X-Total-Page"] == "1"
        assert resp.headers["X-Current-Page"] == "0"

    async def test_default_order_by_creation_date(self, client, catalog):
        asc = _uids(await client.get("/levels"))
        desc = _uids(await client.get("/levels", params={"order": "DESC"}))
        assert asc == ["alice.one", "alice.four"]
        assert desc == list(reversed(asc))

    async def test_item_shape(self, client, catalog):
        level = next(item for item in (await client.get("/levels")).json() if item["uid"] == "alice.one")
        assert [c["difficulty"] for c in level["charts"]] == [3, 9]
        assert level["owner"]["uid"] == "alice"
        assert sorted(level["tags"]) == ["hard", "piano"]
        assert level["rating"] is None
        assert level["plays"] == 0
        assert level["downloads"] == 0

    async def test_own_listing_includes_hidden(self, client, alice, catalog):
        resp = await client.get("/levels", params={"owner": "alice"}, headers=auth_headers(alice))
        assert resp.headers["Cache-Control"] == "private"
        assert len(resp.json()) == 4
        # 按上传者筛选时不返回上传者
        assert all(level["owner"] is None for level in resp.json())

    async def test_other_owner_listing_is_public(self, client, bob, catalog):
        resp = await client.get("/levels", params={"owner": "alice"}, headers=auth_headers(bob))
        assert resp.headers["Cache-Control"] == "public, max-age=60"
        assert len(resp.json()) == 2

    async def test_limit_zero_returns_count_only(self, client, catalog):
        resp = await client.get("/levels", params={"limit": 0})
        assert resp.status_code == 200
        assert resp.json() is None
        assert resp.headers["X-Total-Entries"] == "2"
        assert "X-Total-Page" not in resp.headers

    async def test_limit_is_clamped(self, client, catalog):
        resp = await client.get("/levels", params={"limit": 1000})
        assert resp.headers["X-Total-Page"] == "1"

    async def test_paging(self, client, catalog):
        resp = await client.get("/levels", params={"limit": 1, "page": 1})
        assert _uids(resp) == ["alice.four"]
        assert resp.headers["X-Total-Page"] == "2"
        assert resp.headers["X-Current-Page"] == "1"

    @pytest.mark.parametrize("page", ["-1", "1.5", "abc"])
    async def test_invalid_page(self, client, page):
        resp = await client.get("/levels", params={"page": page})
        assert resp.status_code == 400

    async def test_filter_tags(self, client, catalog):
        assert _uids(await client.get("/levels", params={"tags": "piano|HARD"})) == ["alice.one"]
        assert _uids(await client.get("/levels", params={"tags": "piano|rock"})) == []

    async def test_filter_featured(self, client, catalog):
        assert _uids(await client.get("/levels", params={"featured": "true"})) == ["alice.one"]
        assert _uids(await client.get("/levels", params={"featured": "false"})) == ["alice.four"]

    async def test_filter_chart_type_and_difficulty(self, client, catalog):
        assert _uids(await client.get("/levels", params={"type": "extreme"})) == ["alice.four"]
        assert _uids(await client.get("/levels", params={"min_difficulty": 10})) == ["alice.four"]
        assert _uids(await client.get("/levels", params={"max_difficulty": 5})) == ["alice.one"]
        assert _uids(await client.get("/levels", params={"type": "easy", "min_difficulty": 5})) == []

    async def test_search(self, client, catalog):
        assert _uids(await client.get("/levels", params={"search": "PIANO song"})) == ["alice.one"]
        assert _uids(await client.get("/levels", params={"search": "four"})) == ["alice.four"]

    async def test_filter_date(self, client, session, alice):
        await create_level(session, alice, "old", creation_date=datetime(2019, 5, 1))
        await create_level(session, alice, "new", creation_date=datetime(2021, 5, 1))
        resp = await client.get("/levels", params={"date_start": "2020-01-01T00:00:00Z"})
        assert _uids(resp) == ["new"]
        resp = await client.get("/levels", params={"date_end": "2020-01-01T00:00:00"})
        assert _uids(resp) == ["old"]

    async def test_sort_by_plays(self, client, session, alice, bob, catalog):
        chart = await get_chart(session, catalog["ccp"], "extreme")
        await add_record(session, chart, bob, 900_000, datetime(2024, 1, 1))
        resp = await client.get("/levels", params={"sort": "plays", "order": "desc"})
        assert _uids(resp) == ["alice.four", "alice.one"]
        assert resp.json()[0]["plays"] == 1

    async def test_sort_by_rating(self, client, session, alice, bob, catalog):
        headers = auth_headers(bob)
        await client.post("/levels/alice.one/ratings", json={"rating": 10}, headers=headers)
        resp = await client.get("/levels", params={"sort": "rating", "order": "desc"})
        assert _uids(resp) == ["alice.one", "alice.four"]
        assert resp.json()[0]["rating"] == pytest.approx(10)
        # 没有评分的谱面升序时也排在最后
        resp = await client.get("/levels", params={"sort": "rating", "order": "asc"})
        assert _uids(resp) == ["alice.one", "alice.four"]

    async def test_sort_by_difficulty(self, client, catalog):
        resp = await client.get("/levels", params={"sort": "difficulty", "order": "asc"})
        assert _uids(resp) == ["alice.one", "alice.four"]
        resp = await client.get("/levels", params={"sort": "difficulty", "order": "desc"})
        assert _uids(resp) == ["alice.four", "alice.one"]


class TestGetLevel:
    async def test_public(self, client, session, alice):
        level = await create_level(
            session,
            alice,
            "song",
            charts=(("hard", 9), ("easy", 3)),
            level_metadata={"title": "Song", "raw": {"secret": True}},
        )
        await add_package(session, level, "levels/packages/song.zip", size=4096)
        resp = await client.get("/levels/song")
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "public, max-age=600"
        data = resp.json()
        assert [c["type"] for c in data["charts"]] == ["easy", "hard"]
        assert data["metadata"] == {"title": "Song"}
        assert data["owner"]["id"] == alice.id
        assert data["package_size"] == 4096

    async def test_missing(self, client):
        assert (await client.get("/levels/missing")).status_code == 404

    async def test_censored(self, client, alice, moderator, catalog):
        resp = await client.get("/levels/alice.three")
        assert resp.status_code == 451
        assert resp.json()["detail"] == "censored:copyright"

        owner = await client.get("/levels/alice.three", headers=auth_headers(alice))
        assert owner.status_code == 200
        assert owner.headers["Cache-Control"] == "private"
        assert (await client.get("/levels/alice.three", headers=auth_headers(moderator))).status_code == 200

    async def test_ccp_censorship_visible(self, client, catalog):
        assert (await client.get("/levels/alice.four")).status_code == 200

    async def test_unpublished(self, client, bob, catalog):
        assert (await client.get("/levels/alice.two")).status_code == 403
        assert (await client.get("/levels/alice.two", headers=auth_headers(bob))).status_code == 403

    async def test_legacy_metadata(self, client, session, alice):
        raw = {"title": "Song", "charts": [{"type": "easy", "difficulty": 1}, {"type": "hard", "difficulty": 2}]}
        await create_level(session, alice, "legacy", level_metadata={"raw": raw})
        resp = await client.get("/levels/legacy/legacy")
        assert resp.status_code == 200
        assert resp.json()["charts"] == [{"type": "easy", "difficulty": 3}, {"type": "hard", "difficulty": 9}]


class TestEditLevel:
    async def test_owner_edit(self, client, session, alice, catalog):
        resp = await client.patch(
            "/levels/alice.one",
            json={"title": "Renamed", "tags": ["Rock", "rock", "Jazz"], "featured": False},
            headers=auth_headers(alice),
        )
        assert resp.status_code == 204
        session.expire_all()
        level = (await session.exec(select(Level).where(col(Level.uid) == "alice.one"))).one()
        assert level.title == "Renamed"
        # featured 只有管理员可以修改
        assert level.featured is True
        tags = (await session.exec(select(LevelTag.name).where(col(LevelTag.level_id) == level.id))).all()
        assert sorted(tags) == ["jazz", "rock"]

    async def test_moderator_edit(self, client, session, moderator, catalog):
        resp = await client.patch(
            "/levels/alice.one", json={"featured": False, "censored": "spam"}, headers=auth_headers(moderator)
        )
        assert resp.status_code == 204
        session.expire_all()
        level = (await session.exec(select(Level).where(col(Level.uid) == "alice.one"))).one()
        assert level.featured is False
        assert level.censored == "spam"

    @pytest.mark.parametrize("body", [{"title": None}, {"published": None}, {"featured": None}])
    async def test_null_for_required_column(self, client, session, moderator, catalog, body):
        resp = await client.patch("/levels/alice.one", json=body, headers=auth_headers(moderator))
        assert resp.status_code == 422
        session.expire_all()
        level = (await session.exec(select(Level).where(col(Level.uid) == "alice.one"))).one()
        assert level.title == "Alice One"
        assert level.published is True

    async def test_clear_censorship(self, client, session, moderator, catalog):
        resp = await client.patch("/levels/alice.one", json={"censored": "spam"}, headers=auth_headers(moderator))
        assert resp.status_code == 204
        resp = await client.patch("/levels/alice.one", json={"censored": None}, headers=auth_headers(moderator))
        assert resp.status_code == 204
        session.expire_all()
        level = (await session.exec(select(Level).where(col(Level.uid) == "alice.one"))).one()
        assert level.censored is None

    async def test_other_user_forbidden(self, client, bob, catalog):
        resp = await client.patch("/levels/alice.one", json={"title": "Mine"}, headers=auth_headers(bob))
        assert resp.status_code == 403

    async def test_publish_fires_event(self, client, alice, catalog, monkeypatch):
        published = []

        async def fake_on_level_published(level):
            published.append(level.uid)

        monkeypatch.setattr(levels_router, "on_level_published", fake_on_level_published)
        resp = await client.patch("/levels/alice.two", json={"published": True}, headers=auth_headers(alice))
        assert resp.status_code == 204
        assert published == ["alice.two"]

        # 已经发布的谱面不再触发
        await client.patch("/levels/alice.two", json={"published": True}, headers=auth_headers(alice))
        assert published == ["alice.two"]

    async def test_missing(self, client, alice):
        resp = await client.patch("/levels/missing", json={"title": "x"}, headers=auth_headers(alice))
        assert resp.status_code == 404


class TestDeleteLevel:
    async def test_owner_delete(self, client, session, alice, bob, catalog):
        level = catalog["public"]
        chart = await get_chart(session, level, "easy")
        await add_record(session, chart, bob, 900_000, datetime(2024, 1, 1))
        level_id, chart_id = level.id, chart.id

        assert (await client.delete("/levels/alice.one", headers=auth_headers(bob))).status_code == 404
        assert (await client.delete("/levels/alice.one", headers=auth_headers(alice))).status_code == 204
        assert (await client.delete("/levels/alice.one", headers=auth_headers(alice))).status_code == 404

        session.expire_all()
        assert (await session.exec(select(Chart).where(col(Chart.level_id) == level_id))).all() == []
        assert (await session.exec(select(Record).where(col(Record.chart_id) == chart_id))).all() == []
        assert (await session.exec(select(LevelTag).where(col(LevelTag.level_id) == level_id))).all() == []


class TestStatistics:
    async def test_timeseries(self, client, session, alice, bob, catalog):
        level = catalog["public"]
        easy = await get_chart(session, level, "easy")
        hard = await get_chart(session, level, "hard")
        for chart, date in [
            (easy, datetime(2023, 12, 31)),
            (easy, datetime(2024, 1, 1)),
            (hard, datetime(2024, 1, 2)),
            (hard, datetime(2024, 1, 9)),
        ]:
            await add_record(session, chart, bob, 800_000, date)
        resp = await client.get("/levels/alice.one/statistics/timeseries")
        assert resp.json() == [
            {"year": 2023, "week": 52, "count": 1},
            {"year": 2024, "week": 1, "count": 2},
            {"year": 2024, "week": 2, "count": 1},
        ]


class TestCharts:
    async def test_chart_info(self, client, catalog):
        resp = await client.get("/levels/alice.one/charts/easy")
        assert resp.json() == {"name": "Easy", "difficulty": 3, "level": "alice.one", "type": "easy"}
        assert (await client.get("/levels/alice.one/charts/extreme")).json() is None

    async def test_checksum(self, client, catalog):
        assert (await client.get("/levels/alice.one/charts/easy/checksum")).status_code == 401
        resp = await client.get(
            "/levels/alice.one/charts/easy/checksum", headers={"Authorization": settings.checksum_token}
        )
        assert resp.json() == "alice.one-easy"


class TestRecords:
    body = {
        "score": 987_654,
        "accuracy": 0.99,
        "details": {"perfect": 480, "great": 15, "good": 3, "bad": 1, "miss": 1, "max_combo": 400},
        "mods": ["HideNotes"],
        "ranked": True,
    }

    async def test_submit(self, client, session, bob, catalog):
        resp = await client.post("/levels/alice.one/charts/hard/records", json=self.body, headers=auth_headers(bob))
        assert resp.status_code == 200
        chart = await get_chart(session, catalog["public"], "hard")
        assert resp.json()["chart_id"] == chart.id
        record = await session.get(Record, resp.json()["id"])
        assert record is not None
        assert record.owner_id == bob.id
        assert record.details["max_combo"] == 400

    async def test_unknown_chart(self, client, bob, catalog):
        resp = await client.post(
            "/levels/alice.one/charts/extreme/records", json=self.body, headers=auth_headers(bob)
        )
        assert resp.status_code == 404

    async def test_requires_auth(self, client, catalog):
        assert (await client.post("/levels/alice.one/charts/hard/records", json=self.body)).status_code == 401

    @pytest.mark.parametrize(
        "patch",
        [
            {"score": 1_000_001},
            {"accuracy": 1.5},
            {"mods": ["HideNotes", "HideNotes"]},
            {"details": {"perfect": -1}},
        ],
    )
    async def test_invalid(self, client, bob, catalog, patch):
        resp = await client.post(
            "/levels/alice.one/charts/hard/records", json=self.body | patch, headers=auth_headers(bob)
        )
        assert resp.status_code == 422


class TestDownloads:
    async def test_resources_counts_downloads(self, client, session, bob, catalog):
        await add_package(session, catalog["public"], "levels/packages/alice.one.zip")
        headers = auth_headers(bob)

        resp = await client.get("/levels/alice.one/resources", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["package"].startswith(f"{settings.assets_base}/levels/packages/alice.one.zip?expires=")

        resp = await client.get("/levels/alice.one/package", headers=headers)
        assert resp.status_code == 302
        assert "signature=" in resp.headers["location"]

        download = (
            await session.exec(select(LevelDownload).where(col(LevelDownload.user_id) == bob.id))
        ).one()
        assert download.count == 2

        listed = next(item for item in (await client.get("/levels")).json() if item["uid"] == "alice.one")
        assert listed["downloads"] == 1

    async def test_concurrent_first_downloads(self, engine, session, bob, catalog):
        level_id, bob_id = catalog["public"].id, bob.id
        async with AsyncSession(engine) as first, AsyncSession(engine) as second:
            # 两个请求都还没提交时各自记录第一次下载
            await process_level_download(first, level_id, bob_id)
            await process_level_download(second, level_id, bob_id)
            await first.commit()
            await second.commit()

        downloads = (await session.exec(select(LevelDownload).where(col(LevelDownload.user_id) == bob_id))).all()
        assert [d.count for d in downloads] == [2]

    async def test_requires_auth(self, client, catalog):
        assert (await client.get("/levels/alice.one/resources")).status_code == 401

    async def test_missing_package(self, client, bob, catalog):
        assert (await client.get("/levels/alice.one/resources", headers=auth_headers(bob))).status_code == 404
