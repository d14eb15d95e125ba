from threadchat.models.chat import Message, Sender, Thread, ThreadStatus
from threadchat.services.thread_cache import ThreadCache


def test_threads_survive_a_reload(tmp_path, settings):
    path = tmp_path / "cache.json"
    cache = ThreadCache(path, settings=settings)
    thread = cache.new_thread(context="Answer in French")
    thread.messages.append(Message(thread_id=thread.id, sender=Sender.USER, text="Bonjour"))
    cache.save(thread)

    reloaded = ThreadCache(path, settings=settings)
    reloaded.load()

    restored = reloaded.get(thread.id)
    assert restored.context == "Answer in French"
    assert restored.model == "mistral-large-latest"
    assert [m.text for m in restored.messages] == ["Bonjour"]


def test_corrupt_cache_file_is_ignored(tmp_path, settings):
    path = tmp_path / "cache.json"
    path.write_text("{not json")
    cache = ThreadCache(path, settings=settings)
    assert cache.load() == []
    assert cache.ids() == []


def test_open_or_create_reuses_or_adopts_the_id(tmp_path, settings):
    cache = ThreadCache(tmp_path / "cache.json", settings=settings)
    existing = cache.new_thread()

    assert cache.open_or_create(existing.id) is existing
    created = cache.open_or_create("chosen-id")
    assert created.id == "chosen-id"
    assert created.name == "Thread chosen-id"
    assert cache.exists("chosen-id")


def test_merge_remote_keeps_local_copies(tmp_path, settings):
    cache = ThreadCache(tmp_path / "cache.json", settings=settings)
    local = cache.new_thread()
    local.name = "Local name"

    cache.merge_remote([
        Thread(id=local.id, name="Server name", status=ThreadStatus.REMOTE),
        Thread(id="remote-only", name="Server only", status=ThreadStatus.REMOTE),
    ])

    assert cache.get(local.id).name == "Local name"
    assert cache.get("remote-only").name == "Server only"
