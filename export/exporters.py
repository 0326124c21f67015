import os

from ranking.reconciliation import visible_pool


def export_rankings_and_summary(df, stats: dict, filepath: str):
    """
    Export the rankings table as a .csv and the summary as a .txt file.

    Args:
        df: pandas DataFrame with one row per ranked album.
        stats: Dictionary containing key statistics.
        filepath: Target filepath WITHOUT extension.
    """
    # Ensure output directory exists
    output_dir = os.path.dirname(filepath)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir)

    try:
        # Excel-friendly UTF-8 with BOM
        df.to_csv(filepath + ".csv", index=False, encoding="utf-8-sig")

        with open(filepath + ".txt", "w", encoding="utf-8") as f:
            f.write("Key Statistics:\n\n")
            for key, value in stats.items():
                f.write(f"{key}: {value}\n")

    except OSError as e:
        raise RuntimeError(f"Export failed: {str(e)}") from e


def board_rows(board, category, year):
    """Rows for a single user's board: the ranked list, then the visible pool."""
    rows = [
        {'list': 'ranked', 'rank': e.rank, 'album_id': e.album_id, 'title': e.title,
         'artist': e.artist, 'category': category, 'year': year}
        for e in board.ranked
    ]
    rows += [
        {'list': 'pool', 'rank': '', 'album_id': p.item_id, 'title': p.item.title,
         'artist': p.item.artist, 'category': category, 'year': year}
        for p in visible_pool(board)
    ]
    return rows
