from shoaldb.cursor import TableCursor, table_cursor


def test_empty_data_has_no_cursor():
    assert table_cursor({}) is None


def test_cursor_starts_at_smallest_key():
    data = {30: b"c", 10: b"a", 20: b"b"}
    cursor = table_cursor(data)
    assert cursor.next == 10
    assert cursor.data is data


def test_cursor_single_row():
    cursor = table_cursor({7: b"row"})
    assert cursor == TableCursor(next=7, data={7: b"row"})