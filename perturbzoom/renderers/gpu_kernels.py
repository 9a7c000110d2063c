# gpu_kernels.py

import math

from numba import cuda

# Pixel state codes shared with perturbzoom.board.PixelState
_ACTIVE = 0
_PERIODIC = 1
_ESCAPED = 2
_UNINTERESTING = 3


# ────────────────────────────────────────────────────────────────────────────────
# Batch perturbation kernel: one thread per active pixel, `steps` iterations.
#
#   δ' = (Z + δ)^k - Z^k + Δc        with Z = ref[base], expanded by Horner
#   z  = ref[base + 1] + δ'
#
# Escape, glitch rebasing and the periodicity test follow the CPU iterator
# step for step so both backends report identical nn / pp.
# ────────────────────────────────────────────────────────────────────────────────
@cuda.jit
def advance_batch_kernel(
    ref_re, ref_im, orbit_len,        # reference orbit (float64 mirror)
    cp_iters, n_cp,                   # reference checkpoint iterations (ascending)
    binom, exponent,                  # binom[j] = C(exponent, j)
    dc_re, dc_im,                     # per-pixel Δc
    d_re, d_im, base,                 # per-pixel δ and base iteration (in/out)
    cp_re, cp_im,                     # per-pixel periodicity checkpoint (in/out)
    nn, pp, state, conv, rebases,     # per-pixel results (in/out)
    it0, steps, anchors,              # first board iteration, batch length, anchor flags
    bailout_sq, glitch_tol, eps, eps2,
):
    t = cuda.grid(1)
    if t >= d_re.size:
        return
    if state[t] != _ACTIVE:
        return

    x = d_re[t]
    y = d_im[t]
    b = base[t]

    for s in range(steps):
        it = it0 + s

        # 1) Pixel checkpoint holds the value from before an anchor step
        if anchors[s]:
            cp_re[t] = ref_re[b] + x
            cp_im[t] = ref_im[b] + y
            pp[t] = 0

        # 2) Reference exhausted (escaped): continue from the seed
        if b + 1 >= orbit_len:
            x = ref_re[b] + x - ref_re[0]
            y = ref_im[b] + y - ref_im[0]
            b = 0
            rebases[t] += 1

        # 3) Advance δ
        zr = ref_re[b]
        zi = ref_im[b]
        ar = 1.0
        ai = 0.0
        pr = 1.0
        pi = 0.0
        for j in range(exponent - 1, 0, -1):
            tr = pr * zr - pi * zi
            pi = pr * zi + pi * zr
            pr = tr
            tr = ar * x - ai * y + binom[j] * pr
            ai = ar * y + ai * x + binom[j] * pi
            ar = tr
        nx = ar * x - ai * y + dc_re[t]
        ny = ar * y + ai * x + dc_im[t]
        x = nx
        y = ny
        b += 1

        # 4) Escape test on the full value
        zx = ref_re[b] + x
        zy = ref_im[b] + y
        if zx * zx + zy * zy > bailout_sq:
            state[t] = _ESCAPED
            nn[t] = it + 1
            break

        # 5) Glitch: rebase onto the checkpoint at or before b, else the seed
        zmax = max(abs(zx), abs(zy))
        if b != 0 and max(abs(x), abs(y)) > glitch_tol * zmax:
            target = 0
            k = -1
            for q in range(n_cp):
                if cp_iters[q] <= b:
                    k = q
                else:
                    break
            cx = 0.0
            cy = 0.0
            if k >= 0:
                cx = zx - ref_re[cp_iters[k]]
                cy = zy - ref_im[cp_iters[k]]
                if max(abs(cx), abs(cy)) <= glitch_tol * zmax:
                    target = cp_iters[k]
            if target == 0:
                cx = zx - ref_re[0]
                cy = zy - ref_im[0]
            if target != b:
                x = cx
                y = cy
                b = target
                rebases[t] += 1
            if math.isnan(x) or math.isnan(y) or math.isinf(x) or math.isinf(y):
                state[t] = _UNINTERESTING
                break

        # 6) Periodicity, every step
        db = abs(zx - cp_re[t]) + abs(zy - cp_im[t])
        if db <= eps2:
            if pp[t] == 0:
                pp[t] = it
            if db <= eps:
                state[t] = _PERIODIC
                conv[t] = it
                break

    d_re[t] = x
    d_im[t] = y
    base[t] = b
