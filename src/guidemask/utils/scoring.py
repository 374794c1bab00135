import torch
from typing import List, Tuple


def top_candidates(
    scores: torch.Tensor,
    k: int,
) -> List[Tuple[int, float]]:
    """Select the ``k`` highest-scoring tokens.

    Ties are broken by lowest token id. Tokens scored ``-inf`` or NaN are
    never selected, so fewer than ``k`` candidates may be returned.

    Args:
        scores: Scores of shape (vocab_size,).
        k: Maximum number of candidates.

    Returns:
        List of (token_id, score) tuples in descending score order.
    """
    assert scores.dim() == 1, "scores must be one-dimensional"
    if k <= 0 or scores.numel() == 0:
        return []

    # NaN sorts as the largest value; push it below every real score.
    sortable = scores.float()
    sortable = sortable.masked_fill(torch.isnan(sortable), float('-inf'))
    k = min(k, sortable.numel())

    # Everything tied with the k-th best score is a contender; the stable sort
    # over ascending ids then keeps the lowest ids among ties.
    threshold = torch.topk(sortable, k).values[-1]
    contenders = torch.nonzero(sortable >= threshold).flatten()
    sorted_scores, order = torch.sort(sortable[contenders], descending=True, stable=True)
    sorted_scores = sorted_scores[:k]
    order = contenders[order][:k]

    keep = sorted_scores > float('-inf')
    return list(zip(order[keep].tolist(), sorted_scores[keep].tolist()))
