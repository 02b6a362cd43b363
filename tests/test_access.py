from types import SimpleNamespace

from access import can_play, evaluate, is_card_unlocked, is_video_accessible

paid = SimpleNamespace(id="C1", is_free=False, price=2500)
free = SimpleNamespace(id="C2", is_free=True, price=0)
video = SimpleNamespace(id="V1", max_plays=3)


def progress(n):
    return SimpleNamespace(plays_used=n)


def test_free_card_is_unlocked_with_no_purchases():
    assert is_card_unlocked(free, set())
    assert is_card_unlocked(free, {"C9"})


def test_paid_card_needs_completed_purchase():
    assert not is_card_unlocked(paid, set())
    assert not is_card_unlocked(paid, {"C2"})
    assert is_card_unlocked(paid, {"C1"})


def test_can_play_is_strict():
    assert can_play(video, None)
    assert can_play(video, progress(2))
    assert not can_play(video, progress(3))
    assert not can_play(video, progress(4))


def test_locked_card_blocks_every_video_regardless_of_plays():
    for used in (None, progress(0), progress(1), progress(3)):
        assert not is_video_accessible(video, paid, used, set())


def test_video_accessible_when_unlocked_and_plays_left():
    assert is_video_accessible(video, paid, progress(1), {"C1"})
    assert is_video_accessible(video, free, None, set())
    assert not is_video_accessible(video, free, progress(3), set())


def test_evaluate_reports_reason():
    assert evaluate(video, paid, None, set()).reason == "card_locked"

    exhausted = evaluate(video, free, progress(3), set())
    assert not exhausted.allowed
    assert exhausted.reason == "no_plays_remaining"
    assert exhausted.plays_left == 0

    ok = evaluate(video, paid, progress(1), {"C1"})
    assert ok.allowed
    assert ok.plays_used == 1
    assert ok.plays_left == 2
